"""
FILE DESCRIPTION: Per-crawl URL frontier with admission policy and near-duplicate index.
KEY FUNCTIONS/CLASSES: Frontier

Invariants:
- a normalized URL (by url hash) is admitted at most once per crawl
- depth <= depth_max
- next_batch never hands out depth d+1 while depth d entries are queued
"""

import threading
from collections import Counter, deque
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from scouter.core import logger
from scouter.models import FrontierEntry
from scouter.processor import LinkUtility, ScopePolicy
from scouter.robots import RobotsCache
from scouter.simhash import SimhashIndex

ENQUEUED = "enqueued"
DUPLICATE = "duplicate"
TOO_DEEP = "too_deep"
OUT_OF_SCOPE = "out_of_scope"
BLOCKED = "blocked"
INVALID = "invalid"


class Frontier:
    """
    FLOW: admit(url, depth) -> normalize -> dedupe by hash -> depth/scope/robots checks ->
    per-depth queue. next_batch(n) drains the shallowest depth first.
    """

    def __init__(self, depth_max: int, scope: ScopePolicy, robots: Optional[RobotsCache] = None,
                 user_agent: Optional[str] = None, duplicate_threshold: int = 3):
        self.depth_max = depth_max
        self.scope = scope
        self.robots = robots
        self.user_agent = user_agent
        self.simhash_index = SimhashIndex(duplicate_threshold)
        self.stats = Counter()
        self._seen = set()
        self._queues: Dict[int, deque] = {}
        self._lock = threading.Lock()

    def admit(self, url: str, depth: int, parent_url: Optional[str] = None) -> str:
        """
        Returns one of: "enqueued", "duplicate", "too_deep", "out_of_scope", "blocked", "invalid".
        """
        normalized = LinkUtility.normalize_url(url) if url else ""
        if not normalized or urlsplit(normalized).scheme not in ("http", "https") \
                or not LinkUtility.host_of(normalized):
            return self._count(INVALID)
        url_hash = LinkUtility.url_hash(normalized)

        with self._lock:
            if url_hash in self._seen:
                return self._count(DUPLICATE)
            if depth > self.depth_max:
                return self._count(TOO_DEEP)
            if not self.scope.contains(normalized):
                self._seen.add(url_hash)
                return self._count(OUT_OF_SCOPE)

        if self.robots is not None and not self.robots.is_allowed(normalized, self.user_agent):
            with self._lock:
                self._seen.add(url_hash)
            logger.debug(f"[FRONTIER] Blocked by robots.txt: {normalized}")
            return self._count(BLOCKED)

        entry = FrontierEntry(url=normalized, url_hash=url_hash, depth=depth, parent_url=parent_url)
        with self._lock:
            if url_hash in self._seen:
                return self._count(DUPLICATE)
            self._seen.add(url_hash)
            self._queues.setdefault(depth, deque()).append(entry)
        return self._count(ENQUEUED)

    def next_batch(self, size: int) -> List[FrontierEntry]:
        batch: List[FrontierEntry] = []
        with self._lock:
            if not self._queues:
                return batch
            depth = min(self._queues)
            queue = self._queues[depth]
            while queue and len(batch) < size:
                batch.append(queue.popleft())
            if not queue:
                del self._queues[depth]
        return batch

    def is_seen(self, url: str) -> bool:
        url_hash = LinkUtility.url_hash(LinkUtility.normalize_url(url))
        with self._lock:
            return url_hash in self._seen

    def pending(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values())

    def __len__(self):
        return self.pending()

    def check_duplicate(self, url: str, fingerprint: Optional[int]) -> Optional[str]:
        """
        Returns the URL of an already processed page within the duplicate threshold,
        else registers this fingerprint and returns None.
        """
        if fingerprint is None:
            return None
        with self._lock:
            original = self.simhash_index.find_similar(fingerprint)
            if original is None:
                self.simhash_index.add(url, fingerprint)
            return original

    def _count(self, outcome: str) -> str:
        self.stats[outcome] += 1
        return outcome

    def get_stats(self):
        with self._lock:
            stats = dict(self.stats)
            stats["queued"] = sum(len(q) for q in self._queues.values())
            stats["seen"] = len(self._seen)
        return stats
