"""
FILE DESCRIPTION: Post-crawl analysis over the persisted pages of one crawl.
CONSOLIDATED FROM: categorizer, semantic analysis, duplicate clustering
KEY FUNCTIONS/CLASSES: CategoryRule, Categorizer, semantic_statuses, duplicate_clusters, PostProcessor
"""

import os
import re
from collections import defaultdict
from dataclasses import dataclass
from itertools import combinations
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import yaml

from scouter.core import logger
from scouter.errors import ConfigurationError
from scouter.processor import LinkUtility
from scouter.simhash import cluster_duplicates, hamming_distance

DEFAULT_RULES_FILE = Path(__file__).resolve().parent / "rules" / "categories.yml"
DEFAULT_COLOR = "#aaaaaa"

# Hamming distance for post-crawl near-duplicate clusters (about 85% similarity)
NEAR_DUPLICATE_DISTANCE = 9
# Near-duplicate clustering is quadratic in the worst case; only the most linked pages take part
NEAR_DUPLICATE_SAMPLE = 2000

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


# === CATEGORIZATION ===

@dataclass(frozen=True)
class CategoryRule:
    """
    One category of the YAML rule document.
    dom: literal matched anywhere in the URL (None = any, crawl_domain = use the crawl's host).
    include/exclude: case-insensitive regexes searched in the URL path.
    """
    name: str
    include: Tuple["re.Pattern", ...]
    exclude: Tuple["re.Pattern", ...] = ()
    dom: Optional[str] = None
    crawl_domain: bool = False
    color: str = DEFAULT_COLOR

    def matches(self, url: str, path: str, domain: str) -> bool:
        dom = domain if self.crawl_domain else self.dom
        if dom and dom.lower() not in url.lower():
            return False
        if not any(p.search(path) for p in self.include):
            return False
        return not any(p.search(path) for p in self.exclude)


def _compile_patterns(name: str, key: str, raw) -> Tuple["re.Pattern", ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ConfigurationError(f"Category '{name}': {key} must be a list of patterns")
    patterns = []
    for pattern in raw:
        # nested lists are ignored
        if not isinstance(pattern, (str, int, float)):
            continue
        try:
            patterns.append(re.compile(str(pattern), re.IGNORECASE))
        except re.error as e:
            raise ConfigurationError(f"Category '{name}': invalid {key} pattern {pattern!r}: {e}")
    return tuple(patterns)


class Categorizer:
    """
    FLOW: YAML {name: {dom, include[], exclude[], color}} -> ordered CategoryRules ->
    categorize(url) returns the first category whose rule matches, else None.
    """

    def __init__(self, rules: Iterable[CategoryRule]):
        self.rules = tuple(rules)

    @classmethod
    def from_yaml(cls, text: str) -> "Categorizer":
        try:
            document = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid categorization YAML: {e}")
        if not isinstance(document, dict):
            raise ConfigurationError("Categorization YAML must map category names to rules")

        rules = []
        for name, definition in document.items():
            definition = definition or {}
            if not isinstance(definition, dict):
                raise ConfigurationError(f"Category '{name}' must be a mapping")
            dom = definition.get("dom")
            rules.append(CategoryRule(
                name=str(name),
                include=_compile_patterns(name, "include", definition.get("include")),
                exclude=_compile_patterns(name, "exclude", definition.get("exclude")),
                dom=str(dom) if isinstance(dom, (str, int)) and str(dom) not in ("", ".*") else None,
                crawl_domain=isinstance(dom, list),
                color=str(definition.get("color") or DEFAULT_COLOR).strip("\"'"),
            ))
        return cls(rules)

    @classmethod
    def from_file(cls, path) -> "Categorizer":
        path = Path(path)
        logger.debug(f"[CATEGORIES] Loading rules from {path}")
        return cls.from_yaml(path.read_text(encoding="utf-8"))

    @classmethod
    def for_crawl(cls, record: dict) -> "Categorizer":
        """Rule text stored with the crawl, else CATEGORIES_FILE, else the bundled rules."""
        text = (record or {}).get("categorization")
        if text:
            return cls.from_yaml(text)
        return cls.from_file(os.getenv("CATEGORIES_FILE") or DEFAULT_RULES_FILE)

    @property
    def colors(self) -> Dict[str, str]:
        return {rule.name: rule.color for rule in self.rules}

    @staticmethod
    def url_path(url: str, domain: str) -> str:
        path = _SCHEME_RE.sub("", url)
        if domain and path.lower().startswith(domain.lower()):
            path = path[len(domain):]
        return path

    def categorize(self, url: str, domain: str = "") -> Optional[str]:
        domain = domain or LinkUtility.host_of(url)
        path = self.url_path(url, domain)
        for rule in self.rules:
            if rule.matches(url, path, domain):
                return rule.name
        return None


# === SEMANTIC ANALYSIS ===

def _status(value: str, counts: Dict[str, int]) -> str:
    if not value:
        return "empty"
    return "duplicate" if counts[value] > 1 else "unique"


def semantic_statuses(pages: List[dict]) -> Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]]:
    """
    (title, h1, meta description) status of every compliant page: empty, duplicate or unique.
    Content duplicates (duplicate_of set) are stored without content, they take no part and get no status.
    """
    compliant = [p for p in pages if p.get("compliant")]
    analysed = [p for p in compliant if not p.get("duplicate_of")]
    counts = {key: defaultdict(int) for key in ("title", "h1", "meta_desc")}
    for page in analysed:
        for key, counter in counts.items():
            if page.get(key):
                counter[page[key]] += 1
    statuses = {page["id"]: (None, None, None) for page in compliant if page.get("duplicate_of")}
    for page in analysed:
        statuses[page["id"]] = (
            _status(page.get("title"), counts["title"]),
            _status(page.get("h1"), counts["h1"]),
            _status(page.get("meta_desc"), counts["meta_desc"]),
        )
    return statuses


# === DUPLICATE CLUSTERS ===

def similarity_percent(distance: float) -> int:
    return int(round((64 - distance) / 64 * 100))


def duplicate_clusters(pages: List[dict], threshold: int = NEAR_DUPLICATE_DISTANCE,
                       sample: int = NEAR_DUPLICATE_SAMPLE) -> List[dict]:
    """
    Exact clusters (same fingerprint, similarity 100) largest first, then near clusters:
    fingerprints transitively within `threshold` bits with at least two distinct values.
    Only crawled compliant 200 pages with a fingerprint take part.
    """
    candidates = [
        p for p in pages
        if p.get("crawled") and p.get("code") == 200 and p.get("compliant") and p.get("simhash") is not None
    ]

    by_fingerprint: Dict[int, List[str]] = defaultdict(list)
    for page in candidates:
        by_fingerprint[page["simhash"]].append(page["id"])
    exact = sorted((ids for ids in by_fingerprint.values() if len(ids) > 1), key=len, reverse=True)
    clusters = [{"similarity": 100, "page_ids": ids} for ids in exact]

    if threshold <= 0:
        return clusters

    ranked = sorted(candidates, key=lambda p: p.get("inlinks") or 0, reverse=True)[:sample]
    fingerprints = {p["id"]: p["simhash"] for p in ranked}
    for ids in cluster_duplicates(fingerprints.items(), threshold):
        if len({fingerprints[i] for i in ids}) < 2:
            continue
        distances = [hamming_distance(fingerprints[a], fingerprints[b]) for a, b in combinations(ids, 2)]
        clusters.append({
            "similarity": similarity_percent(sum(distances) / len(distances)),
            "page_ids": ids,
        })
    return clusters


# === PIPELINE ===

class PostProcessor:
    """
    FLOW: inlinks -> semantic statuses -> categories -> duplicate clusters.
    Runs once after a crawl completes; every step reads the crawl's persisted pages.
    """

    def __init__(self, page_store, crawl_id: int, domain: str, categorizer: Optional[Categorizer] = None,
                 near_threshold: int = NEAR_DUPLICATE_DISTANCE):
        self.page_store = page_store
        self.crawl_id = crawl_id
        self.domain = domain
        self.categorizer = categorizer
        self.near_threshold = near_threshold

    def run(self) -> List[dict]:
        context = {"context": f"crawl-{self.crawl_id}"}

        self.page_store.refresh_inlinks(self.crawl_id)
        logger.info("[POSTPROCESS] Inlinks calculated", extra=context)

        pages = list(self.page_store.iter_pages(self.crawl_id))

        statuses = semantic_statuses(pages)
        self.page_store.set_semantic_statuses(self.crawl_id, statuses)
        logger.info(f"[POSTPROCESS] Semantic analysis done on {len(statuses)} compliant pages", extra=context)

        if self.categorizer is not None and self.categorizer.rules:
            categories = {page["id"]: self.categorizer.categorize(page["url"], self.domain) for page in pages}
            self.page_store.set_categories(self.crawl_id, categories)
            categorized = sum(1 for c in categories.values() if c)
            logger.info(f"[POSTPROCESS] Categorized {categorized}/{len(pages)} pages", extra=context)
        else:
            logger.info("[POSTPROCESS] No categorization rules", extra=context)

        clusters = duplicate_clusters(pages, self.near_threshold)
        self.page_store.save_duplicate_clusters(self.crawl_id, clusters)
        logger.info(
            f"[POSTPROCESS] {len(clusters)} duplicate clusters, "
            f"{sum(len(c['page_ids']) for c in clusters)} pages",
            extra=context,
        )
        return clusters
