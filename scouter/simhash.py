"""
FILE DESCRIPTION: 64-bit Simhash content fingerprints and near-duplicate lookup.
KEY FUNCTIONS/CLASSES: compute, hamming_distance, are_similar, SimhashIndex, cluster_duplicates
"""

import html
import re
import zlib
from collections import defaultdict
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

MASK64 = (1 << 64) - 1
SHINGLE_SIZE = 3
MIN_WORD_LENGTH = 3

_TAG_RE = re.compile(r"<[^>]*>")
_NON_WORD_RE = re.compile(r"[\W_]+", re.UNICODE)


def normalize(text: str) -> str:
    """Strips tags, decodes entities, lowercases and reduces punctuation/whitespace to single spaces."""
    if not text:
        return ""
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text).lower()
    return _NON_WORD_RE.sub(" ", text).strip()


def tokenize(text: str, shingle_size: int = SHINGLE_SIZE) -> List[str]:
    words = [w for w in text.split() if len(w) >= MIN_WORD_LENGTH]
    if len(words) < shingle_size:
        return words
    return [" ".join(words[i:i + shingle_size]) for i in range(len(words) - shingle_size + 1)]


def hash64(token: str) -> int:
    data = token.encode("utf-8")
    high = zlib.crc32(data)
    low = zlib.crc32(token[::-1].encode("utf-8") + data)
    return (high << 32) | low


def compute(text: str) -> Optional[int]:
    """
    FLOW: normalize -> 3-word shingles (single words when fewer than 3) ->
    +1/-1 vote per bit of each shingle hash -> bit set where the vote is positive.
    Returns None when there is nothing to fingerprint.
    """
    tokens = tokenize(normalize(text))
    if not tokens:
        return None

    votes = [0] * 64
    for token in tokens:
        h = hash64(token)
        for i in range(64):
            votes[i] += 1 if (h >> i) & 1 else -1

    fingerprint = 0
    for i, vote in enumerate(votes):
        if vote > 0:
            fingerprint |= 1 << i
    return fingerprint


def hamming_distance(a: int, b: int) -> int:
    return bin((a ^ b) & MASK64).count("1")


def are_similar(a: int, b: int, threshold: int = 3) -> bool:
    return hamming_distance(a, b) <= threshold


def to_signed64(value: Optional[int]) -> Optional[int]:
    """SQLite INTEGER columns are signed 64-bit."""
    if value is None:
        return None
    return value - (1 << 64) if value >= (1 << 63) else value


def from_signed64(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return value & MASK64


def _bands(threshold: int) -> List[Tuple[int, int]]:
    # Pigeonhole: two fingerprints within `threshold` bits agree on at least one of threshold+1 bands
    count = max(1, min(threshold + 1, 64))
    width, extra = divmod(64, count)
    bands, start = [], 0
    for i in range(count):
        size = width + (1 if i < extra else 0)
        bands.append((start, (1 << size) - 1))
        start += size
    return bands


class SimhashIndex:
    """
    Fingerprints seen during one crawl.
    FLOW: add(key, fp) -> indexed by exact value and by band -> find_similar(fp) checks only band-mates.
    """

    def __init__(self, threshold: int = 3):
        self.threshold = threshold
        self._bands = _bands(threshold)
        self._exact: Dict[int, Hashable] = {}
        self._buckets = defaultdict(list)

    def __len__(self):
        return len(self._exact)

    def add(self, key: Hashable, fingerprint: int) -> None:
        if fingerprint in self._exact:
            return
        self._exact[fingerprint] = key
        for n, (shift, mask) in enumerate(self._bands):
            self._buckets[(n, (fingerprint >> shift) & mask)].append(fingerprint)

    def neighbours(self, fingerprint: int):
        """Yields (key, distance) for every indexed fingerprint within threshold."""
        seen = set()
        for n, (shift, mask) in enumerate(self._bands):
            for candidate in self._buckets.get((n, (fingerprint >> shift) & mask), ()):
                if candidate in seen:
                    continue
                seen.add(candidate)
                distance = hamming_distance(fingerprint, candidate)
                if distance <= self.threshold:
                    yield self._exact[candidate], distance

    def find_similar(self, fingerprint: int) -> Optional[Hashable]:
        """Returns the key of the closest indexed fingerprint within threshold, exact matches first."""
        if fingerprint in self._exact:
            return self._exact[fingerprint]
        best = min(self.neighbours(fingerprint), key=lambda pair: pair[1], default=None)
        return best[0] if best else None


def cluster_duplicates(items: Iterable[Tuple[Hashable, int]], threshold: int) -> List[List[Hashable]]:
    """
    Groups keys whose fingerprints are transitively within `threshold` bits (union-find).
    Only clusters of two or more members are returned, largest first.
    """
    parent: Dict[Hashable, Hashable] = {}

    def find(x):
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(a, b):
        ra, rb = find(a), find(b)
        if ra != rb:
            parent[rb] = ra

    by_fingerprint: Dict[int, List[Hashable]] = defaultdict(list)
    for key, fingerprint in items:
        if fingerprint is None:
            continue
        parent[key] = key
        by_fingerprint[fingerprint].append(key)

    index = SimhashIndex(threshold)
    for fingerprint, keys in by_fingerprint.items():
        for key in keys[1:]:
            union(keys[0], key)
        if threshold > 0:
            for other, _ in index.neighbours(fingerprint):
                union(keys[0], other)
        index.add(keys[0], fingerprint)

    clusters: Dict[Hashable, List[Hashable]] = defaultdict(list)
    for key in parent:
        clusters[find(key)].append(key)
    return sorted((c for c in clusters.values() if len(c) > 1), key=len, reverse=True)
