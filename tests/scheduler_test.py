"""
Verification Scenarios for fetch limits, the fetch scheduler and the page fetcher
"""

import unittest
from unittest.mock import MagicMock

import requests

from scouter.models import CrawlConfig, FetchResult, FrontierEntry, RenderFailure, RenderSuccess
from scouter.processor import PageFetcher, TrafficControl
from scouter.scheduler import FetchScheduler, resolve_limits


def make_config(general=None, advanced=None):
    record = {"general": {"start": "https://example.com/", "domains": ["example.com"]}, "advanced": {}}
    record["general"].update(general or {})
    record["advanced"].update(advanced or {})
    return CrawlConfig.from_dict(record)


def entry(url, depth=0):
    return FrontierEntry(url=url, url_hash=url, depth=depth)


class TestResolveLimits(unittest.TestCase):
    def test_speed_profile(self):
        limits = resolve_limits(make_config({"crawl_speed": "fast"}), environ={})
        self.assertEqual(limits.concurrency, 8)
        self.assertEqual(limits.rate, 15)

    def test_unlimited_has_no_rate(self):
        limits = resolve_limits(make_config({"crawl_speed": "unlimited"}), environ={})
        self.assertIsNone(limits.rate)

    def test_environment_overrides_config_and_profile(self):
        config = make_config({"crawl_speed": "slow"}, {"max_concurrent_curl": 4})

        self.assertEqual(resolve_limits(config, environ={}).concurrency, 4)
        self.assertEqual(resolve_limits(config, environ={"MAX_CONCURRENT_CURL": "25"}).concurrency, 25)

    def test_invalid_environment_value_is_ignored(self):
        limits = resolve_limits(make_config({"crawl_speed": "fast"}), environ={"MAX_CONCURRENT_CURL": "lots"})
        self.assertEqual(limits.concurrency, 8)

    def test_render_concurrency(self):
        config = make_config({"crawl_mode": "javascript"}, {"max_concurrent_chrome": 2})
        self.assertEqual(resolve_limits(config, environ={}).render_concurrency, 2)
        self.assertEqual(resolve_limits(config, environ={"MAX_CONCURRENT_CHROME": "3"}).render_concurrency, 3)

    def test_explicit_rate(self):
        self.assertEqual(resolve_limits(make_config(advanced={"target_urls_per_second": 2.5}), {}).rate, 2.5)
        self.assertIsNone(resolve_limits(make_config(advanced={"target_urls_per_second": 0}), {}).rate)


class TestTrafficControl(unittest.TestCase):
    def test_starts_are_spaced(self):
        sleep = MagicMock()
        traffic = TrafficControl(rate_per_second=2, clock=lambda: 100.0, sleep=sleep)

        self.assertEqual(traffic.acquire_start(), 0)
        self.assertEqual(traffic.acquire_start(), 0.5)
        sleep.assert_called_once_with(0.5)

    def test_unbounded_never_waits(self):
        sleep = MagicMock()
        traffic = TrafficControl(None, sleep=sleep)
        for _ in range(5):
            traffic.acquire_start()
        sleep.assert_not_called()

    def test_host_pause(self):
        now = [10.0]
        sleep = MagicMock()
        traffic = TrafficControl(clock=lambda: now[0], sleep=sleep)

        traffic.set_pause("example.com", 5)
        self.assertEqual(traffic.get_remaining_pause("example.com"), 5)
        traffic.wait_for_host("example.com")
        sleep.assert_called_once_with(5)

        now[0] = 20.0
        self.assertEqual(traffic.get_remaining_pause("example.com"), 0)


class TestFetchScheduler(unittest.TestCase):
    def setUp(self):
        self.fetcher = MagicMock()
        self.fetcher.fetch.side_effect = lambda url: FetchResult(
            url=url, status=200, content_type="text/html", body=b"<html>plain</html>", size=18
        )

    def test_batch_yields_every_entry(self):
        scheduler = FetchScheduler(make_config({"crawl_speed": "unlimited"}), fetcher=self.fetcher, environ={})
        try:
            urls = ["https://example.com/a", "https://example.com/b", "https://example.com/c"]
            results = dict((e.url, r) for e, r in scheduler.run_batch([entry(u) for u in urls]))
        finally:
            scheduler.close()

        self.assertEqual(set(results), set(urls))
        self.assertTrue(all(r.status == 200 for r in results.values()))
        self.assertEqual(scheduler.batch_size, 10)

    def test_session_pool_holds_every_concurrent_fetch(self):
        with FetchScheduler(make_config(), environ={"MAX_CONCURRENT_CURL": "25"}) as scheduler:
            adapter = scheduler.fetcher.session.get_adapter("https://example.com/")

            self.assertEqual(scheduler.limits.concurrency, 25)
            self.assertEqual(adapter.poolmanager.connection_pool_kw["maxsize"], 25)

    def test_fetch_exception_becomes_status_zero(self):
        self.fetcher.fetch.side_effect = RuntimeError("socket exploded")
        with FetchScheduler(make_config(), fetcher=self.fetcher, environ={}) as scheduler:
            [(_, result)] = list(scheduler.run_batch([entry("https://example.com/a")]))

        self.assertEqual(result.status, 0)
        self.assertIn("socket exploded", result.error)

    def test_javascript_mode_renders_html(self):
        renderer = MagicMock()
        renderer.render.return_value = RenderSuccess(html="<html>rendered</html>")
        config = make_config({"crawl_mode": "javascript"}, {"customHeaders": {"X-Test": "1"}})

        with FetchScheduler(config, fetcher=self.fetcher, renderer=renderer, environ={}) as scheduler:
            [(_, result)] = list(scheduler.run_batch([entry("https://example.com/a")]))

        self.assertTrue(result.rendered)
        self.assertEqual(result.body, b"<html>rendered</html>")
        self.assertEqual(result.size, len(b"<html>rendered</html>"))
        headers = renderer.render.call_args[0][1]
        self.assertEqual(headers["X-Test"], "1")
        self.assertIn("User-Agent", headers)

    def test_render_failure_keeps_plain_result(self):
        """Scenario: the renderer fails, the page keeps its plain fetch and carries the error."""
        renderer = MagicMock()
        renderer.render.return_value = RenderFailure(error="renderer timeout")

        with FetchScheduler(make_config({"crawl_mode": "javascript"}), fetcher=self.fetcher, renderer=renderer,
                            environ={}) as scheduler:
            [(_, result)] = list(scheduler.run_batch([entry("https://example.com/a")]))

        self.assertEqual(result.status, 200)
        self.assertFalse(result.rendered)
        self.assertEqual(result.body, b"<html>plain</html>")
        self.assertEqual(result.error, "render failed: renderer timeout")

    def test_non_html_is_not_rendered(self):
        self.fetcher.fetch.side_effect = lambda url: FetchResult(url=url, status=200, content_type="image/png")
        renderer = MagicMock()

        with FetchScheduler(make_config({"crawl_mode": "javascript"}), fetcher=self.fetcher, renderer=renderer,
                            environ={}) as scheduler:
            list(scheduler.run_batch([entry("https://example.com/logo.png")]))

        renderer.render.assert_not_called()


class TestPageFetcher(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.fetcher = PageFetcher(make_config(advanced={"customHeaders": {"X-Env": "staging"}}),
                                   session=self.session, traffic=TrafficControl())

    def test_redirect_is_not_followed(self):
        response = MagicMock(status_code=301, url="https://example.com/old",
                             headers={"Location": "/new", "Content-Type": "text/html"})
        response.iter_content.return_value = [b"moved"]
        self.session.get.return_value = response

        result = self.fetcher.fetch("https://example.com/old")

        self.assertEqual(result.status, 301)
        self.assertEqual(result.redirect_to, "https://example.com/new")
        self.assertEqual(result.size, 5)
        kwargs = self.session.get.call_args[1]
        self.assertFalse(kwargs["allow_redirects"])
        self.assertEqual(kwargs["headers"]["X-Env"], "staging")
        response.close.assert_called_once()

    def test_timeout_is_status_zero(self):
        self.session.get.side_effect = requests.Timeout("read timed out")

        result = self.fetcher.fetch("https://example.com/slow")

        self.assertEqual(result.status, 0)
        self.assertTrue(result.error.startswith("timeout"))

    def test_throttled_host_is_paused(self):
        response = MagicMock(status_code=429, url="https://example.com/a", headers={})
        response.iter_content.return_value = []
        self.session.get.return_value = response

        self.fetcher.fetch("https://example.com/a")

        self.assertGreater(self.fetcher.traffic.get_remaining_pause("example.com"), 0)


if __name__ == "__main__":
    unittest.main()
