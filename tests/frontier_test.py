"""
Verification Scenarios for frontier admission and depth ordering
"""

import unittest
from unittest.mock import MagicMock

from scouter.frontier import BLOCKED, DUPLICATE, ENQUEUED, INVALID, OUT_OF_SCOPE, TOO_DEEP, Frontier
from scouter.processor import LinkUtility, ScopePolicy
from scouter.robots import RobotsCache


class TestFrontier(unittest.TestCase):
    def setUp(self):
        self.robots = RobotsCache(session=MagicMock())
        self.robots.prime("https://example.com", "User-agent: *\nDisallow: /private\n")
        self.frontier = Frontier(2, ScopePolicy(["example.com"]), robots=self.robots)

    def test_admission_outcomes(self):
        self.assertEqual(self.frontier.admit("https://Example.com", 0), ENQUEUED)
        self.assertEqual(self.frontier.admit("https://example.com/#section", 1), DUPLICATE)
        self.assertEqual(self.frontier.admit("https://other.org/", 1), OUT_OF_SCOPE)
        self.assertEqual(self.frontier.admit("https://example.com/deep", 3), TOO_DEEP)
        self.assertEqual(self.frontier.admit("https://example.com/private/a", 1), BLOCKED)
        self.assertEqual(self.frontier.admit("mailto:someone@example.com", 1), INVALID)
        self.assertEqual(self.frontier.admit("", 1), INVALID)

        stats = self.frontier.get_stats()
        self.assertEqual(stats[ENQUEUED], 1)
        self.assertEqual(stats["queued"], 1)
        self.assertEqual(stats["seen"], 3)

    def test_rejected_urls_are_not_readmitted(self):
        """Scenario: blocked and out-of-scope URLs are remembered, a too-deep URL may come back shallower."""
        self.frontier.admit("https://example.com/private/a", 1)
        self.assertEqual(self.frontier.admit("https://example.com/private/a", 1), DUPLICATE)

        self.frontier.admit("https://example.com/page", 3)
        self.assertEqual(self.frontier.admit("https://example.com/page", 2), ENQUEUED)

    def test_robots_only_enforced_when_given(self):
        frontier = Frontier(2, ScopePolicy(["example.com"]))
        self.assertEqual(frontier.admit("https://example.com/private/a", 1), ENQUEUED)

    def test_shallowest_depth_first(self):
        self.frontier.admit("https://example.com/", 0)
        self.frontier.admit("https://example.com/a", 1)
        self.frontier.admit("https://example.com/b", 1)
        self.frontier.admit("https://example.com/a/1", 2)

        first = self.frontier.next_batch(10)
        self.assertEqual([e.url for e in first], ["https://example.com/"])

        second = self.frontier.next_batch(1)
        self.assertEqual([e.url for e in second], ["https://example.com/a"])
        self.assertEqual(self.frontier.pending(), 2)

        self.frontier.admit("https://example.com/c", 1)
        third = self.frontier.next_batch(10)
        self.assertEqual([e.url for e in third], ["https://example.com/b", "https://example.com/c"])
        self.assertEqual([e.depth for e in self.frontier.next_batch(10)], [2])
        self.assertEqual(self.frontier.next_batch(10), [])

    def test_entries_carry_identity_and_parent(self):
        self.frontier.admit("https://example.com/a", 1, parent_url="https://example.com/")
        entry = self.frontier.next_batch(1)[0]

        self.assertEqual(entry.url_hash, LinkUtility.url_hash("https://example.com/a"))
        self.assertEqual(entry.parent_url, "https://example.com/")
        self.assertTrue(self.frontier.is_seen("https://EXAMPLE.com/a#x"))

    def test_duplicate_check(self):
        self.assertIsNone(self.frontier.check_duplicate("https://example.com/a", 0b1010))
        self.assertEqual(self.frontier.check_duplicate("https://example.com/b", 0b1011), "https://example.com/a")
        self.assertIsNone(self.frontier.check_duplicate("https://example.com/c", None))
        self.assertIsNone(self.frontier.check_duplicate("https://example.com/d", 2 ** 64 - 1))


class TestScope(unittest.TestCase):
    def test_wildcard_patterns(self):
        scope = ScopePolicy(["*.example.com", "example.com"])
        self.assertTrue(scope.contains("https://blog.example.com/post"))
        self.assertTrue(scope.contains("https://example.com/"))
        self.assertFalse(scope.contains("https://a.b.example.com/"))
        self.assertTrue(scope.is_external("https://example.org/"))

    def test_url_normalization(self):
        self.assertEqual(LinkUtility.normalize_url("HTTPS://Example.COM:443"), "https://example.com/")
        self.assertEqual(LinkUtility.resolve("https://example.com/a/b", "../c?x=1#frag"), "https://example.com/c?x=1")
        self.assertIsNone(LinkUtility.resolve("https://example.com/", "javascript:void(0)"))
        self.assertIsNone(LinkUtility.resolve("https://example.com/", "#top"))


if __name__ == "__main__":
    unittest.main()
