"""
FILE DESCRIPTION: Network fetching, URL sanitization, crawl scope and throughput control.
CONSOLIDATED FROM: fetcher, normalizer, url_utils, throttle
KEY FUNCTIONS/CLASSES: LinkUtility, ScopePolicy, TrafficControl, build_session, PageFetcher
"""

import re
import threading
import time
import zlib
from typing import Iterable, Optional, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
import tldextract
import urllib3
from requests.adapters import HTTPAdapter

from scouter.core import CONNECT_TIMEOUT, REQUEST_TIMEOUT, logger
from scouter.models import CrawlConfig, FetchResult

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

MAX_BODY_BYTES = 10 * 1024 * 1024
NON_NAVIGABLE_SCHEMES = ("mailto:", "javascript:", "tel:", "data:", "sms:", "ftp:", "file:", "about:")


# === LINK UTILITY ===

class LinkUtility:

    @staticmethod
    def normalize_url(url: str) -> str:
        """
        Crawl identity normalization.
        Lowercases scheme/host, drops the fragment and gives a bare host its '/' path.
        """
        if not url:
            return ""
        parts = urlsplit(url.strip())
        scheme = (parts.scheme or "https").lower()
        netloc = parts.netloc.lower()
        if scheme == "http" and netloc.endswith(":80"):
            netloc = netloc[:-3]
        elif scheme == "https" and netloc.endswith(":443"):
            netloc = netloc[:-4]
        path = parts.path or "/"
        return urlunsplit((scheme, netloc, path, parts.query, ""))

    @staticmethod
    def url_hash(url: str) -> str:
        """Stable per-crawl identity of a normalized URL (crc32, hex)."""
        return format(zlib.crc32(url.encode("utf-8")), "08x")

    @staticmethod
    def resolve(base: str, href: str) -> Optional[str]:
        """
        FLOW: Rejects non-navigable schemes -> Resolves relative reference against base
        (dot segments removed) -> Keeps http(s) only -> Returns normalized absolute URL.
        """
        if href is None:
            return None
        href = href.strip()
        if not href or href.startswith("#"):
            return None
        if href.lower().startswith(NON_NAVIGABLE_SCHEMES):
            return None
        try:
            absolute = urljoin(base, href)
        except ValueError:
            return None
        if urlsplit(absolute).scheme.lower() not in ("http", "https"):
            return None
        return LinkUtility.normalize_url(absolute)

    @staticmethod
    def host_of(url: str) -> str:
        return (urlsplit(url).hostname or "").lower()


# === SCOPE ===

class ScopePolicy:
    """
    Domain allow-list of one crawl.
    Patterns may contain '*' matching one label fragment ('*.example.com').
    With no patterns the scope is the start URL's registrable domain and its www variant.
    """

    def __init__(self, patterns: Iterable[str]):
        self.patterns = tuple(p.strip().lower() for p in patterns if p and p.strip())
        self._regexes = [
            re.compile("^" + re.escape(p).replace(r"\*", "[^.]*") + "$") for p in self.patterns
        ]

    @classmethod
    def for_config(cls, config: CrawlConfig) -> "ScopePolicy":
        if config.domains:
            return cls(config.domains)
        return cls(cls.derive_patterns(config.start_url))

    @staticmethod
    def derive_patterns(start_url: str) -> Tuple[str, ...]:
        host = LinkUtility.host_of(start_url)
        ext = tldextract.extract(start_url)
        root = ext.top_domain_under_public_suffix if hasattr(ext, "top_domain_under_public_suffix") \
            else ext.registered_domain
        patterns = [host]
        if root:
            for candidate in (root, f"www.{root}"):
                if candidate not in patterns:
                    patterns.append(candidate)
        return tuple(patterns)

    def contains_host(self, host: str) -> bool:
        host = (host or "").lower()
        return any(r.match(host) for r in self._regexes)

    def contains(self, url: str) -> bool:
        return self.contains_host(LinkUtility.host_of(url))

    def is_external(self, url: str) -> bool:
        return not self.contains(url)


# === TRAFFIC CONTROL ===

class TrafficControl:
    """
    FLOW: Spaces fetch starts to the target rate -> Tracks 429/503 pauses per host ->
    Implements thread-safe wait periods before network requests.
    One instance per crawl.
    """

    def __init__(self, rate_per_second: Optional[float] = None, clock=time.monotonic, sleep=time.sleep):
        self.rate = rate_per_second if rate_per_second and rate_per_second > 0 else None
        self._interval = 1.0 / self.rate if self.rate else 0.0
        self._next_start = 0.0
        self._pauses = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    def acquire_start(self) -> float:
        """Blocks until this caller may start a fetch. Returns the time waited."""
        if not self.rate:
            return 0.0
        with self._lock:
            now = self._clock()
            start = max(now, self._next_start)
            self._next_start = start + self._interval
        delay = start - now
        if delay > 0:
            self._sleep(delay)
        return delay

    def set_pause(self, host, seconds=5, url=None):
        if not host:
            return
        with self._lock:
            now = self._clock()
            if self._pauses.get(host, 0) < now:
                url_info = f" on {url}" if url else ""
                logger.info(f"[THROTTLE] Host {host} hit 429/503{url_info}. Pausing host for {seconds}s.")
            self._pauses[host] = max(self._pauses.get(host, 0), now + seconds)

    def get_remaining_pause(self, host):
        if not host:
            return 0
        with self._lock:
            return max(0, self._pauses.get(host, 0) - self._clock())

    def wait_for_host(self, host):
        remaining = self.get_remaining_pause(host)
        if remaining > 0:
            logger.info(f"[THROTTLE] Pre-fetch pause active for {host}. Waiting {remaining:.1f}s...")
            self._sleep(remaining)


# === PAGE FETCHER ===

def build_session(pool_size: int) -> requests.Session:
    """Session whose connection pool keeps one connection per concurrent fetch."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class PageFetcher:
    """
    FLOW: Waits for host pauses -> Executes HTTP GET without following redirects ->
    Reads the body under the total timeout -> Returns FetchResult (status 0 on timeout/network error).
    """
    BASE_HEADERS = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Encoding": "gzip, deflate, br",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }

    def __init__(self, config: CrawlConfig, session: Optional[requests.Session] = None,
                 traffic: Optional[TrafficControl] = None,
                 connect_timeout: float = CONNECT_TIMEOUT, total_timeout: float = REQUEST_TIMEOUT):
        self.config = config
        self.session = session or requests.Session()
        self.traffic = traffic or TrafficControl()
        self.connect_timeout = connect_timeout
        self.total_timeout = total_timeout

    def request_headers(self):
        headers = dict(self.BASE_HEADERS)
        headers["User-Agent"] = self.config.user_agent
        headers.update(self.config.headers)
        return headers

    def fetch(self, url: str) -> FetchResult:
        host = LinkUtility.host_of(url)
        self.traffic.wait_for_host(host)

        start_time = time.monotonic()
        try:
            r = self.session.get(
                url,
                headers=self.request_headers(),
                auth=self.config.http_auth,
                timeout=(self.connect_timeout, self.total_timeout),
                allow_redirects=False,
                verify=False,
                stream=True,
            )
        except requests.Timeout as e:
            return self._failure(url, start_time, f"timeout: {e}")
        except requests.RequestException as e:
            return self._failure(url, start_time, f"network error: {e}")

        try:
            body = self._read_body(r, start_time)
        except TimeoutError as e:
            return self._failure(url, start_time, str(e))
        except requests.RequestException as e:
            return self._failure(url, start_time, f"network error while reading body: {e}")
        finally:
            r.close()

        elapsed = time.monotonic() - start_time
        if r.status_code in (429, 503):
            self.traffic.set_pause(host, 5, url=url)

        redirect_to = None
        if 300 <= r.status_code < 400 and r.headers.get("Location"):
            redirect_to = LinkUtility.resolve(url, r.headers["Location"])

        return FetchResult(
            url=url,
            status=r.status_code,
            content_type=r.headers.get("Content-Type", "").lower(),
            size=len(body),
            elapsed=elapsed,
            final_url=r.url or url,
            redirect_to=redirect_to,
            body=body,
            headers=dict(r.headers),
        )

    def _read_body(self, response, start_time) -> bytes:
        chunks, size = [], 0
        for chunk in response.iter_content(chunk_size=65536):
            if time.monotonic() - start_time > self.total_timeout:
                raise TimeoutError(f"timeout: body not received within {self.total_timeout}s")
            chunks.append(chunk)
            size += len(chunk)
            if size >= MAX_BODY_BYTES:
                logger.warning(f"[FETCH] Body truncated at {MAX_BODY_BYTES} bytes for {response.url}")
                break
        return b"".join(chunks)

    @staticmethod
    def _failure(url, start_time, error) -> FetchResult:
        logger.warning(f"[FETCH] {url} failed: {error}")
        return FetchResult(url=url, status=0, elapsed=time.monotonic() - start_time, final_url=url, error=error)
