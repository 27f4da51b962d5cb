"""
FILE DESCRIPTION: Bounded-concurrency, rate-limited fetch multiplexer.
KEY FUNCTIONS/CLASSES: SPEED_PROFILES, FetchLimits, resolve_limits, FetchScheduler

Concurrency ceiling and start rate are independent: a BoundedSemaphore caps in-flight fetches,
TrafficControl spaces fetch starts. Rendered pages hold a fetch slot for the whole render.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Mapping, Optional, Tuple

from scouter.core import env_int, logger
from scouter.js_engine import RendererClient
from scouter.models import CrawlConfig, FetchResult, FrontierEntry, RenderFailure
from scouter.processor import PageFetcher, TrafficControl, build_session


@dataclass(frozen=True)
class SpeedProfile:
    concurrency: int
    rate: Optional[float]  # fetch starts per second, None = unbounded


SPEED_PROFILES = {
    "very_slow": SpeedProfile(concurrency=2, rate=1),
    "slow": SpeedProfile(concurrency=3, rate=5),
    "fast": SpeedProfile(concurrency=8, rate=15),
    "unlimited": SpeedProfile(concurrency=10, rate=None),
}


@dataclass(frozen=True)
class FetchLimits:
    concurrency: int
    rate: Optional[float]
    render_concurrency: int


def resolve_limits(config: CrawlConfig, environ: Optional[Mapping[str, str]] = None) -> FetchLimits:
    """
    Precedence for each limit: worker environment > explicit config field > speed profile.
    MAX_CONCURRENT_CURL governs plain fetches, MAX_CONCURRENT_CHROME rendered ones.
    """
    environ = os.environ if environ is None else environ
    profile = SPEED_PROFILES[config.crawl_speed]

    concurrency = env_int("MAX_CONCURRENT_CURL", environ=environ) \
        or config.max_concurrent_curl or profile.concurrency
    render_concurrency = env_int("MAX_CONCURRENT_CHROME", environ=environ) \
        or config.max_concurrent_chrome or profile.concurrency

    rate = profile.rate
    if config.target_urls_per_second is not None:
        rate = config.target_urls_per_second or None

    return FetchLimits(concurrency=concurrency, rate=rate, render_concurrency=render_concurrency)


class FetchScheduler:
    """
    FLOW: run_batch(entries) -> Thread pool of `concurrency` workers -> Each run() takes a slot ->
    Waits for its start turn -> Plain fetch -> (javascript mode, HTML 200) render through the service ->
    Yields (entry, FetchResult) as fetches complete.
    """

    def __init__(self, config: CrawlConfig, fetcher: Optional[PageFetcher] = None,
                 renderer: Optional[RendererClient] = None, traffic: Optional[TrafficControl] = None,
                 environ: Optional[Mapping[str, str]] = None):
        self.config = config
        self.limits = resolve_limits(config, environ)
        self.traffic = traffic or TrafficControl(self.limits.rate)
        self.fetcher = fetcher or PageFetcher(
            config, session=build_session(self.limits.concurrency), traffic=self.traffic
        )
        self._owns_session = fetcher is None
        self.renderer = renderer
        if self.renderer is None and config.render_javascript:
            self.renderer = RendererClient()
        self._slots = threading.BoundedSemaphore(self.limits.concurrency)
        self._render_slots = threading.BoundedSemaphore(self.limits.render_concurrency)
        self._executor = ThreadPoolExecutor(max_workers=self.limits.concurrency, thread_name_prefix="fetch")
        logger.info(
            f"[SCHEDULER] speed={config.crawl_speed} mode={config.crawl_mode} "
            f"concurrency={self.limits.concurrency} render_concurrency={self.limits.render_concurrency} "
            f"rate={self.limits.rate or 'unbounded'}/s"
        )

    @property
    def batch_size(self) -> int:
        if self.config.render_javascript:
            return min(self.limits.concurrency, self.limits.render_concurrency)
        return self.limits.concurrency

    def run(self, entry: FrontierEntry) -> FetchResult:
        with self._slots:
            self.traffic.acquire_start()
            result = self.fetcher.fetch(entry.url)
            if self.renderer is not None and self._should_render(result):
                result = self._render(result)
        return result

    def run_batch(self, entries: Iterable[FrontierEntry]) -> Iterator[Tuple[FrontierEntry, FetchResult]]:
        futures = {self._executor.submit(self.run, entry): entry for entry in entries}
        for future in as_completed(futures):
            entry = futures[future]
            try:
                result = future.result()
            except Exception as e:
                logger.exception(f"[SCHEDULER] Unexpected fetch error for {entry.url}")
                result = FetchResult(url=entry.url, status=0, final_url=entry.url, error=f"fetch error: {e}")
            yield entry, result

    def close(self):
        self._executor.shutdown(wait=True)
        if self._owns_session:
            self.fetcher.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @staticmethod
    def _should_render(result: FetchResult) -> bool:
        return result.status == 200 and ("html" in result.content_type or not result.content_type)

    def _render(self, result: FetchResult) -> FetchResult:
        headers = {"User-Agent": self.config.user_agent, **self.config.headers}
        with self._render_slots:
            rendered = self.renderer.render(result.url, headers)
        if isinstance(rendered, RenderFailure):
            return replace(result, error=f"render failed: {rendered.error}")
        body = rendered.html.encode("utf-8")
        return replace(result, body=body, size=len(body), rendered=True)
