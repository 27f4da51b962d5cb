"""
FILE DESCRIPTION: Durable per-crawl page and link records.
KEY FUNCTIONS/CLASSES: PageRecord, PageStore
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from scouter.models import Link
from scouter.processor import LinkUtility
from scouter.simhash import from_signed64, to_signed64
from scouter.storage.db import with_retry


def utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class PageRecord:
    """One persisted page row. Built by the engine from a FrontierEntry, FetchResult and ExtractionResult."""
    id: str
    url: str
    domain: str = ""
    depth: int = 0
    parent_id: Optional[str] = None
    code: int = 0
    content_type: str = ""
    size: int = 0
    response_time: float = 0.0
    redirect_to: Optional[str] = None
    error: Optional[str] = None
    crawled: bool = True
    is_html: bool = False
    rendered: bool = False
    external: bool = False
    blocked: bool = False
    noindex: bool = False
    nofollow: bool = False
    canonical: bool = True
    canonical_value: str = ""
    compliant: bool = False
    title: str = ""
    h1: str = ""
    meta_desc: str = ""
    h1_multiple: bool = False
    headings_missing: bool = False
    schemas: List[str] = field(default_factory=list)
    extracts: Dict = field(default_factory=dict)
    simhash: Optional[int] = None
    word_count: int = 0
    duplicate_of: Optional[str] = None
    category: Optional[str] = None


PAGE_COLUMNS = (
    "id", "url", "domain", "depth", "parent_id", "code", "content_type", "size", "response_time",
    "redirect_to", "error", "crawled", "is_html", "rendered", "external", "blocked", "noindex",
    "nofollow", "canonical", "canonical_value", "compliant", "title", "h1", "meta_desc",
    "h1_multiple", "headings_missing", "schemas", "extracts", "simhash", "word_count",
    "duplicate_of", "category",
)


def _decode_row(row) -> dict:
    page = dict(row)
    page["simhash"] = from_signed64(page["simhash"])
    page["schemas"] = json.loads(page["schemas"]) if page["schemas"] else []
    page["extracts"] = json.loads(page["extracts"]) if page["extracts"] else {}
    return page


class PageStore:
    """
    Writes pages/links of crawls into the shared SQLite database.
    Every public write is retried on lock contention and runs in its own transaction.
    """

    def __init__(self, conn):
        self._conn = conn
        self._lock = threading.Lock()

    # -------------------------------
    # CRAWLS
    # -------------------------------
    @with_retry
    def create_crawl(self, path: str, start_url: str, config: dict, project_name: Optional[str] = None) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO crawls (path, project_name, start_url, config, created_at) VALUES (?, ?, ?, ?, ?)",
                (path, project_name, start_url, json.dumps(config, ensure_ascii=False), utcnow()),
            )
        return cur.lastrowid

    def get_crawl(self, crawl_id: int) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM crawls WHERE id = ?", (crawl_id,)).fetchone()
        if row is None:
            return None
        crawl = dict(row)
        crawl["config"] = json.loads(crawl["config"]) if crawl["config"] else {}
        return crawl

    def get_crawl_by_path(self, path: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute("SELECT id FROM crawls WHERE path = ?", (path,)).fetchone()
        return self.get_crawl(row[0]) if row else None

    # -------------------------------
    # PAGES / LINKS
    # -------------------------------
    @with_retry
    def save_page(self, crawl_id: int, record: PageRecord) -> None:
        values = []
        for column in PAGE_COLUMNS:
            value = getattr(record, column)
            if column in ("schemas", "extracts"):
                value = json.dumps(value, ensure_ascii=False)
            elif column == "simhash":
                value = to_signed64(value)
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)

        columns = ", ".join(("crawl_id",) + PAGE_COLUMNS + ("crawled_at",))
        placeholders = ", ".join("?" for _ in range(len(PAGE_COLUMNS) + 2))
        updates = ", ".join(f"{c} = excluded.{c}" for c in PAGE_COLUMNS if c != "id")
        sql = (
            f"INSERT INTO pages ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT(crawl_id, id) DO UPDATE SET {updates}, crawled_at = excluded.crawled_at"
        )
        with self._lock, self._conn:
            self._conn.execute(sql, [crawl_id] + values + [utcnow()])

    @with_retry
    def save_discovered(self, crawl_id: int, records: Iterable[PageRecord]) -> None:
        """Inserts not-yet-crawled pages; rows that already exist are left untouched."""
        rows = [
            (crawl_id, r.id, r.url, r.domain, r.depth, r.parent_id, int(r.external), int(r.blocked), utcnow())
            for r in records
        ]
        if not rows:
            return
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT OR IGNORE INTO pages (crawl_id, id, url, domain, depth, parent_id, crawled, "
                "external, blocked, crawled_at) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)",
                rows,
            )

    @with_retry
    def save_links(self, crawl_id: int, src_id: str, links: Iterable[Link], link_type: str = "ahref") -> int:
        rows = [
            (crawl_id, src_id, LinkUtility.url_hash(link.url), link.url, link.anchor,
             int(link.external), int(link.nofollow), link_type)
            for link in links
        ]
        if not rows:
            return 0
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT OR IGNORE INTO links (crawl_id, src, target, target_url, anchor, external, nofollow, type) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    @with_retry
    def update_crawl_counters(self, crawl_id: int, urls: int, crawled: int) -> None:
        with self._lock, self._conn:
            self._conn.execute("UPDATE crawls SET urls = ?, crawled = ? WHERE id = ?", (urls, crawled, crawl_id))

    @with_retry
    def set_categories(self, crawl_id: int, categories: Dict[str, Optional[str]]) -> None:
        with self._lock, self._conn:
            self._conn.executemany(
                "UPDATE pages SET category = ? WHERE crawl_id = ? AND id = ?",
                [(category, crawl_id, page_id) for page_id, category in categories.items()],
            )

    @with_retry
    def refresh_inlinks(self, crawl_id: int) -> None:
        """Counts followed internal links pointing at each page."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE pages SET inlinks = (
                    SELECT COUNT(DISTINCT l.src) FROM links l
                    WHERE l.crawl_id = pages.crawl_id AND l.target = pages.id
                      AND l.nofollow = 0 AND l.external = 0 AND l.src != pages.id
                ) WHERE crawl_id = ?
                """,
                (crawl_id,),
            )

    @with_retry
    def set_semantic_statuses(self, crawl_id: int,
                              statuses: Dict[str, Tuple[Optional[str], Optional[str], Optional[str]]]) -> None:
        """statuses: page id -> (title_status, h1_status, metadesc_status), None clears a status."""
        with self._lock, self._conn:
            self._conn.executemany(
                "UPDATE pages SET title_status = ?, h1_status = ?, metadesc_status = ? "
                "WHERE crawl_id = ? AND id = ?",
                [(t, h, m, crawl_id, page_id) for page_id, (t, h, m) in statuses.items()],
            )

    @with_retry
    def save_duplicate_clusters(self, crawl_id: int, clusters: List[dict]) -> None:
        """clusters: [{"similarity": percent, "page_ids": [...]}, ...] in display order."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM duplicate_clusters WHERE crawl_id = ?", (crawl_id,))
            self._conn.executemany(
                "INSERT INTO duplicate_clusters (crawl_id, cluster_id, similarity, page_count, page_ids) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    (crawl_id, n, c["similarity"], len(c["page_ids"]), json.dumps(c["page_ids"]))
                    for n, c in enumerate(clusters, start=1)
                ],
            )

    def iter_pages(self, crawl_id: int, html_only: bool = False) -> Iterator[dict]:
        sql = "SELECT * FROM pages WHERE crawl_id = ?"
        if html_only:
            sql += " AND is_html = 1 AND crawled = 1"
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY depth, url", (crawl_id,)).fetchall()
        for row in rows:
            yield _decode_row(row)

    def get_page(self, crawl_id: int, page_id: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pages WHERE crawl_id = ? AND id = ?", (crawl_id, page_id)
            ).fetchone()
        return _decode_row(row) if row is not None else None

    def links_from(self, crawl_id: int, src_id: str) -> List[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM links WHERE crawl_id = ? AND src = ? ORDER BY target_url", (crawl_id, src_id)
            ).fetchall()
        return [dict(r) for r in rows]
