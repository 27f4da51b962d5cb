"""
Database connection and initialization for crawls, pages, links and jobs.
SQLite file defaults to DATABASE_PATH; tests pass a temporary path.
"""

import functools
import random
import sqlite3
import time
from pathlib import Path

from scouter.core import DATABASE_PATH, logger
from scouter.errors import PersistenceError

SCHEMA = """
CREATE TABLE IF NOT EXISTS crawls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT UNIQUE NOT NULL,
    project_name TEXT,
    start_url TEXT,
    config TEXT,               -- JSON {general, advanced}
    status TEXT NOT NULL DEFAULT 'pending',
    in_progress INTEGER NOT NULL DEFAULT 0,
    urls INTEGER NOT NULL DEFAULT 0,
    crawled INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    crawl_id INTEGER REFERENCES crawls(id) ON DELETE SET NULL,
    project_dir TEXT NOT NULL,
    project_name TEXT,
    command TEXT NOT NULL DEFAULT 'crawl',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending','queued','running','stopping','stopped','completed','failed')),
    progress INTEGER NOT NULL DEFAULT 0,
    pid INTEGER,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at);

CREATE TABLE IF NOT EXISTS job_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'info' CHECK (type IN ('info','warning','error','success')),
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, id);

CREATE TABLE IF NOT EXISTS pages (
    crawl_id INTEGER NOT NULL REFERENCES crawls(id) ON DELETE CASCADE,
    id TEXT NOT NULL,          -- crc32 of the normalized URL
    url TEXT NOT NULL,
    domain TEXT,
    depth INTEGER NOT NULL DEFAULT 0,
    parent_id TEXT,
    code INTEGER NOT NULL DEFAULT 0,
    content_type TEXT,
    size INTEGER NOT NULL DEFAULT 0,
    response_time REAL NOT NULL DEFAULT 0,
    redirect_to TEXT,
    error TEXT,
    crawled INTEGER NOT NULL DEFAULT 1,
    is_html INTEGER NOT NULL DEFAULT 0,
    rendered INTEGER NOT NULL DEFAULT 0,
    external INTEGER NOT NULL DEFAULT 0,
    blocked INTEGER NOT NULL DEFAULT 0,
    noindex INTEGER NOT NULL DEFAULT 0,
    nofollow INTEGER NOT NULL DEFAULT 0,
    canonical INTEGER NOT NULL DEFAULT 1,
    canonical_value TEXT,
    compliant INTEGER NOT NULL DEFAULT 0,
    title TEXT,
    h1 TEXT,
    meta_desc TEXT,
    h1_multiple INTEGER NOT NULL DEFAULT 0,
    headings_missing INTEGER NOT NULL DEFAULT 0,
    schemas TEXT,              -- JSON list
    extracts TEXT,             -- JSON object
    simhash INTEGER,           -- signed 64-bit
    word_count INTEGER NOT NULL DEFAULT 0,
    duplicate_of TEXT,
    category TEXT,
    inlinks INTEGER NOT NULL DEFAULT 0,
    title_status TEXT,         -- empty, duplicate or unique (compliant pages only)
    h1_status TEXT,
    metadesc_status TEXT,
    crawled_at TEXT NOT NULL,
    PRIMARY KEY (crawl_id, id)
);

CREATE TABLE IF NOT EXISTS links (
    crawl_id INTEGER NOT NULL REFERENCES crawls(id) ON DELETE CASCADE,
    src TEXT NOT NULL,
    target TEXT NOT NULL,
    target_url TEXT NOT NULL,
    anchor TEXT,
    external INTEGER NOT NULL DEFAULT 0,
    nofollow INTEGER NOT NULL DEFAULT 0,
    type TEXT NOT NULL DEFAULT 'ahref',  -- 'ahref', 'redirect', 'canonical'
    PRIMARY KEY (crawl_id, src, target, type)
);

CREATE TABLE IF NOT EXISTS duplicate_clusters (
    crawl_id INTEGER NOT NULL REFERENCES crawls(id) ON DELETE CASCADE,
    cluster_id INTEGER NOT NULL,
    similarity INTEGER NOT NULL,  -- percent, 100 for exact duplicates
    page_count INTEGER NOT NULL,
    page_ids TEXT NOT NULL,    -- JSON list
    PRIMARY KEY (crawl_id, cluster_id)
);
"""


def get_connection(db_path=None):
    """
    Create and return a SQLite database connection.
    WAL mode lets the dashboard and watchdog read while a crawl writes.
    """
    db_path = Path(db_path or DATABASE_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def initialize_db(conn):
    """Create every table that does not exist yet."""
    conn.executescript(SCHEMA)
    conn.commit()


def is_retryable(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def with_retry(func=None, *, attempts=3, base_delay=0.05, max_delay=0.5):
    """
    Retries a write on SQLite lock contention with jittered exponential backoff (50ms..500ms).
    Raises PersistenceError once the attempts are exhausted.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if not is_retryable(e):
                        raise PersistenceError(f"{fn.__name__} failed: {e}") from e
                    if attempt == attempts:
                        raise PersistenceError(f"{fn.__name__} failed after {attempts} attempts: {e}") from e
                    delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
                    delay = random.uniform(delay / 2, delay)
                    logger.warning(f"[DB] {fn.__name__} hit '{e}'. Retry {attempt}/{attempts - 1} in {delay * 1000:.0f}ms")
                    time.sleep(delay)
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
