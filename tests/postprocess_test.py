"""
Verification Scenarios for categorization, semantic analysis and duplicate clusters
"""

import unittest
from unittest.mock import MagicMock

from scouter.errors import ConfigurationError
from scouter.postprocess import (
    DEFAULT_COLOR,
    DEFAULT_RULES_FILE,
    Categorizer,
    PostProcessor,
    duplicate_clusters,
    semantic_statuses,
    similarity_percent,
)

RULES = """
Blog:
  include: ['^/blog/']
  exclude: ['/tag/']
  color: '#10ac84'
Shop:
  dom: shop.example.com
  include: ['.*']
Everything on this crawl:
  dom: [crawl]
  include: ['/']
"""


class TestCategorizer(unittest.TestCase):
    def setUp(self):
        self.categorizer = Categorizer.from_yaml(RULES)

    def test_first_match_wins(self):
        self.assertEqual(self.categorizer.categorize("https://example.com/blog/post", "example.com"), "Blog")
        self.assertEqual(self.categorizer.categorize("https://example.com/BLOG/Post", "example.com"), "Blog")

    def test_exclude(self):
        self.assertEqual(
            self.categorizer.categorize("https://example.com/blog/tag/news", "example.com"),
            "Everything on this crawl",
        )

    def test_dom_literal(self):
        self.assertEqual(self.categorizer.categorize("https://shop.example.com/cart", "example.com"), "Shop")

    def test_list_dom_means_crawl_domain(self):
        self.assertEqual(self.categorizer.categorize("https://example.com/about", "example.com"),
                         "Everything on this crawl")
        self.assertIsNone(self.categorizer.categorize("https://partner.org/about", "example.com"))

    def test_colors(self):
        colors = self.categorizer.colors
        self.assertEqual(colors["Blog"], "#10ac84")
        self.assertEqual(colors["Shop"], DEFAULT_COLOR)

    def test_invalid_documents(self):
        for text in ("Blog:\n  include: ['(unclosed']\n", "- just\n- a list\n", "Blog: [unbalanced",
                     "Blog: 42\n"):
            with self.subTest(text=text):
                with self.assertRaises(ConfigurationError):
                    Categorizer.from_yaml(text)

    def test_empty_document(self):
        self.assertEqual(Categorizer.from_yaml("").rules, ())

    def test_bundled_rules(self):
        categorizer = Categorizer.from_file(DEFAULT_RULES_FILE)

        self.assertEqual(categorizer.categorize("https://example.com/"), "Home")
        self.assertEqual(categorizer.categorize("https://example.com/blog/first-post"), "Blog")
        self.assertIsNone(categorizer.categorize("https://example.com/blog/tag/seo/"))
        self.assertEqual(categorizer.categorize("https://example.com/products/blue-widget"), "Product")

    def test_rules_stored_with_crawl(self):
        categorizer = Categorizer.for_crawl({"categorization": RULES})
        self.assertEqual([r.name for r in categorizer.rules][0], "Blog")

    def test_url_path(self):
        self.assertEqual(Categorizer.url_path("https://example.com/a?b=1", "example.com"), "/a?b=1")
        self.assertEqual(Categorizer.url_path("http://other.org/a", "example.com"), "other.org/a")


def page_row(page_id, **values):
    row = {"id": page_id, "url": f"https://example.com/{page_id}", "crawled": 1, "code": 200, "compliant": 1,
           "simhash": None, "title": "", "h1": "", "meta_desc": "", "inlinks": 0}
    row.update(values)
    return row


class TestSemanticStatuses(unittest.TestCase):
    def test_statuses(self):
        pages = [
            page_row("p1", title="Shoes", h1="Shoes", meta_desc="Buy shoes"),
            page_row("p2", title="Shoes", h1="Boots", meta_desc=""),
            page_row("p3", title="Shoes", compliant=0),
        ]

        statuses = semantic_statuses(pages)

        self.assertEqual(statuses, {
            "p1": ("duplicate", "unique", "unique"),
            "p2": ("duplicate", "unique", "empty"),
        })

    def test_content_duplicates_get_no_status(self):
        pages = [
            page_row("p1", title="Widgets", h1="Widgets"),
            page_row("p2", duplicate_of="p1"),
            page_row("p3", title="Contact"),
        ]

        self.assertEqual(semantic_statuses(pages), {
            "p1": ("unique", "unique", "empty"),
            "p2": (None, None, None),
            "p3": ("unique", "empty", "empty"),
        })


class TestDuplicateClusters(unittest.TestCase):
    def test_exact_then_near_clusters(self):
        pages = [
            page_row("p1", simhash=0, inlinks=5),
            page_row("p2", simhash=0, inlinks=3),
            page_row("p3", simhash=0b1, inlinks=1),
            page_row("p4", simhash=2 ** 64 - 1),
            page_row("p5", simhash=0, compliant=0),
            page_row("p6", simhash=0, code=404),
        ]

        clusters = duplicate_clusters(pages)

        self.assertEqual(clusters[0], {"similarity": 100, "page_ids": ["p1", "p2"]})
        self.assertEqual(clusters[1]["similarity"], 99)
        self.assertEqual(sorted(clusters[1]["page_ids"]), ["p1", "p2", "p3"])
        self.assertEqual(len(clusters), 2)

    def test_exact_only_group_is_not_repeated_as_near(self):
        pages = [page_row("p1", simhash=7), page_row("p2", simhash=7)]
        self.assertEqual(duplicate_clusters(pages), [{"similarity": 100, "page_ids": ["p1", "p2"]}])

    def test_similarity_percent(self):
        self.assertEqual(similarity_percent(0), 100)
        self.assertEqual(similarity_percent(9), 86)
        self.assertEqual(similarity_percent(64), 0)


class TestPostProcessor(unittest.TestCase):
    def test_pipeline_order(self):
        """Scenario: inlinks first (clusters sample by inlinks), then semantics, categories, clusters."""
        store = MagicMock()
        store.iter_pages.return_value = iter([
            page_row("p1", url="https://example.com/blog/a", simhash=1, title="A"),
            page_row("p2", url="https://example.com/blog/b", simhash=1, title="A"),
        ])
        categorizer = Categorizer.from_yaml(RULES)

        clusters = PostProcessor(store, 3, "example.com", categorizer).run()

        self.assertEqual([c[0] for c in store.method_calls], [
            "refresh_inlinks", "iter_pages", "set_semantic_statuses", "set_categories", "save_duplicate_clusters",
        ])
        store.set_categories.assert_called_once_with(3, {"p1": "Blog", "p2": "Blog"})
        store.set_semantic_statuses.assert_called_once_with(3, {
            "p1": ("duplicate", "empty", "empty"), "p2": ("duplicate", "empty", "empty"),
        })
        self.assertEqual(clusters, [{"similarity": 100, "page_ids": ["p1", "p2"]}])

    def test_without_categorizer(self):
        store = MagicMock()
        store.iter_pages.return_value = iter([])

        PostProcessor(store, 3, "example.com").run()

        store.set_categories.assert_not_called()
        store.save_duplicate_clusters.assert_called_once_with(3, [])


if __name__ == "__main__":
    unittest.main()
