"""
FILE DESCRIPTION: Immutable data models flowing through one crawl.
KEY FUNCTIONS/CLASSES: CrawlConfig, FrontierEntry, FetchResult, Link, ExtractionResult,
RenderSuccess, RenderFailure, CrawlSummary
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from scouter.core import DEFAULT_USER_AGENT, DUPLICATE_THRESHOLD
from scouter.errors import ConfigurationError

SPEED_NAMES = ("very_slow", "slow", "fast", "unlimited")
CRAWL_MODES = ("classic", "javascript")


# === EXTRACTOR DEFINITIONS ===

@dataclass(frozen=True)
class RegexExtractor:
    name: str
    pattern: str


@dataclass(frozen=True)
class XPathExtractor:
    """
    Single-value XPath extractor, or a tree extractor when `fields` is set.
    Tree fields map a sub-field name to a relative XPath, '@attr' or '.' (node text).
    """
    name: str
    xpath: str
    fields: Tuple[Tuple[str, str], ...] = ()

    @property
    def is_tree(self) -> bool:
        return bool(self.fields)


@dataclass(frozen=True)
class ExtractorConfig:
    xpath: Tuple[XPathExtractor, ...] = ()
    regex: Tuple[RegexExtractor, ...] = ()

    def __bool__(self):
        return bool(self.xpath or self.regex)


def _parse_xpath_extractors(raw) -> Tuple[XPathExtractor, ...]:
    if not raw:
        return ()
    if isinstance(raw, Mapping):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ConfigurationError(f"Invalid xPathExtractors entry: {entry!r}")
            items.append((entry["name"], entry))
    else:
        raise ConfigurationError("xPathExtractors must be a mapping or a list")

    extractors = []
    for name, definition in items:
        if isinstance(definition, str):
            extractors.append(XPathExtractor(name=str(name), xpath=definition))
        elif isinstance(definition, Mapping) and definition.get("xpath"):
            fields = tuple((str(k), str(v)) for k, v in (definition.get("fields") or {}).items())
            extractors.append(XPathExtractor(name=str(name), xpath=str(definition["xpath"]), fields=fields))
        else:
            raise ConfigurationError(f"xPath extractor '{name}' has no expression")
    return tuple(extractors)


def _parse_regex_extractors(raw) -> Tuple[RegexExtractor, ...]:
    if not raw:
        return ()
    if isinstance(raw, Mapping):
        return tuple(RegexExtractor(name=str(k), pattern=str(v)) for k, v in raw.items())
    if isinstance(raw, list):
        extractors = []
        for entry in raw:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ConfigurationError(f"Invalid regexExtractors entry: {entry!r}")
            pattern = entry.get("pattern") or entry.get("regex")
            if not pattern:
                raise ConfigurationError(f"Regex extractor '{entry['name']}' has no pattern")
            extractors.append(RegexExtractor(name=str(entry["name"]), pattern=str(pattern)))
        return tuple(extractors)
    raise ConfigurationError("regexExtractors must be a mapping or a list")


def _optional_positive_int(value, key):
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    if number <= 0:
        raise ConfigurationError(f"{key} must be positive, got {number}")
    return number


def _mapping(value, key) -> Mapping[str, Any]:
    """Optional configuration section: missing or empty means {}, anything but a mapping is rejected."""
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{key} must be a mapping, got {type(value).__name__}")
    return value


# === CRAWL CONFIGURATION ===

@dataclass(frozen=True)
class CrawlConfig:
    """
    Immutable configuration of one crawl.
    Invariant: validated at construction through from_dict(); never changes once the crawl starts.
    """
    start_url: str
    domains: Tuple[str, ...] = ()
    depth_max: int = 5
    crawl_speed: str = "fast"
    crawl_mode: str = "classic"
    user_agent: str = DEFAULT_USER_AGENT
    extractors: ExtractorConfig = field(default_factory=ExtractorConfig)
    custom_headers: Tuple[Tuple[str, str], ...] = ()
    http_auth: Optional[Tuple[str, str]] = None
    respect_robots: bool = True
    respect_canonical: bool = True
    max_concurrent_curl: Optional[int] = None
    max_concurrent_chrome: Optional[int] = None
    target_urls_per_second: Optional[float] = None
    duplicate_threshold: int = DUPLICATE_THRESHOLD

    @property
    def render_javascript(self) -> bool:
        return self.crawl_mode == "javascript"

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self.custom_headers)

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "CrawlConfig":
        """
        FLOW: Reads the persisted {general, advanced} record -> Applies defaults ->
        Validates start URL, depth, speed and mode -> Raises ConfigurationError on any problem.
        """
        if not isinstance(record, Mapping):
            raise ConfigurationError("Crawl configuration must be a mapping")
        general = _mapping(record.get("general"), "general")
        advanced = _mapping(record.get("advanced"), "advanced")

        start = general.get("start") or ""
        if not isinstance(start, str):
            raise ConfigurationError(f"general.start must be a URL string, got {start!r}")
        start = start.strip()
        if not start:
            raise ConfigurationError("general.start is required")
        parsed = urlparse(start)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"general.start must be an absolute http(s) URL, got {start!r}")

        domains = general.get("domains") or []
        if isinstance(domains, str):
            domains = [d for d in domains.replace(",", "\n").splitlines()]
        elif not isinstance(domains, (list, tuple)):
            raise ConfigurationError(f"general.domains must be a list or text, got {domains!r}")
        domains = tuple(str(d).strip().lower() for d in domains if d and str(d).strip())

        try:
            depth_max = int(general.get("depthMax", 5))
        except (TypeError, ValueError):
            raise ConfigurationError(f"general.depthMax must be an integer, got {general.get('depthMax')!r}")
        if depth_max < 0:
            raise ConfigurationError("general.depthMax must not be negative")

        crawl_speed = general.get("crawl_speed") or "fast"
        if crawl_speed not in SPEED_NAMES:
            raise ConfigurationError(f"Unknown crawl_speed '{crawl_speed}'")
        crawl_mode = general.get("crawl_mode") or "classic"
        if crawl_mode not in CRAWL_MODES:
            raise ConfigurationError(f"Unknown crawl_mode '{crawl_mode}'")

        headers = advanced.get("customHeaders") or {}
        if not isinstance(headers, Mapping):
            raise ConfigurationError("advanced.customHeaders must be a mapping")

        auth = _mapping(advanced.get("httpAuth"), "advanced.httpAuth")
        http_auth = None
        if auth.get("enabled") and auth.get("username"):
            http_auth = (str(auth["username"]), str(auth.get("password") or ""))

        respect = _mapping(advanced.get("respect"), "advanced.respect")

        rate = advanced.get("target_urls_per_second")
        if rate not in (None, ""):
            try:
                rate = float(rate)
            except (TypeError, ValueError):
                raise ConfigurationError(f"target_urls_per_second must be a number, got {rate!r}")
            if rate < 0:
                raise ConfigurationError("target_urls_per_second must not be negative")
        else:
            rate = None

        threshold = advanced.get("duplicate_threshold", DUPLICATE_THRESHOLD)
        try:
            threshold = int(threshold)
        except (TypeError, ValueError):
            raise ConfigurationError(f"duplicate_threshold must be an integer, got {threshold!r}")

        return cls(
            start_url=start,
            domains=domains,
            depth_max=depth_max,
            crawl_speed=crawl_speed,
            crawl_mode=crawl_mode,
            user_agent=general.get("user-agent") or DEFAULT_USER_AGENT,
            extractors=ExtractorConfig(
                xpath=_parse_xpath_extractors(advanced.get("xPathExtractors")),
                regex=_parse_regex_extractors(advanced.get("regexExtractors")),
            ),
            custom_headers=tuple((str(k), str(v)) for k, v in headers.items()),
            http_auth=http_auth,
            respect_robots=bool(respect.get("robots", True)),
            respect_canonical=bool(respect.get("canonical", True)),
            max_concurrent_curl=_optional_positive_int(advanced.get("max_concurrent_curl"), "max_concurrent_curl"),
            max_concurrent_chrome=_optional_positive_int(advanced.get("max_concurrent_chrome"), "max_concurrent_chrome"),
            target_urls_per_second=rate,
            duplicate_threshold=threshold,
        )


# === FRONTIER / FETCH ===

@dataclass(frozen=True)
class FrontierEntry:
    """
    Discovery candidate.
    Invariants: url is normalized; url_hash is the per-crawl identity; depth <= depth_max.
    """
    url: str
    url_hash: str
    depth: int = 0
    parent_url: Optional[str] = None
    enqueued_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: int
    content_type: str = ""
    size: int = 0
    elapsed: float = 0.0
    final_url: Optional[str] = None
    redirect_to: Optional[str] = None
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    rendered: bool = False

    def header(self, name: str, default: str = "") -> str:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


@dataclass(frozen=True)
class RenderSuccess:
    html: str


@dataclass(frozen=True)
class RenderFailure:
    error: str
    status: int = 0


RenderResult = Union[RenderSuccess, RenderFailure]


# === EXTRACTION ===

@dataclass(frozen=True)
class Link:
    url: str
    external: bool
    anchor: str = ""
    nofollow: bool = False


@dataclass(frozen=True)
class ExtractionResult:
    """
    Signals extracted from one FetchResult.
    Invariant: derived purely from the fetch, never mutated afterwards.
    """
    is_html: bool
    title: str = ""
    h1: str = ""
    h1_count: int = 0
    meta_description: str = ""
    canonical: str = ""
    noindex: bool = False
    nofollow: bool = False
    headings_missing: bool = False
    links: Tuple[Link, ...] = ()
    schemas: Tuple[str, ...] = ()
    simhash: Optional[int] = None
    word_count: int = 0
    extracts: Mapping[str, Any] = field(default_factory=dict)

    @property
    def h1_multiple(self) -> bool:
        return self.h1_count > 1

    def is_canonical_for(self, url: str) -> bool:
        return not self.canonical or self.canonical == url


@dataclass
class CrawlSummary:
    crawl_id: int
    status: str
    processed: int = 0
    failed: int = 0
    duplicates: int = 0
    rejected: Dict[str, int] = field(default_factory=dict)
    duplicate_clusters: List[List[str]] = field(default_factory=list)
