"""
FILE DESCRIPTION: Queue worker running crawl jobs in-process.
KEY FUNCTIONS/CLASSES: CrawlWorker, main

FLOW: Recover orphaned jobs -> Poll oldest queued job (claimed atomically as running) ->
Load crawl record + CrawlConfig -> CrawlEngine.run() -> Final status:
stopping -> stopped, running -> completed, exception -> failed (unless already terminal).
"""

import argparse
import os
import signal
import time
from typing import Optional

from scouter.core import WORKER_POLL_INTERVAL, logger
from scouter.engine import CrawlEngine
from scouter.errors import ConfigurationError
from scouter.jobs.manager import JobManager, build_manager
from scouter.jobs.models import TERMINAL_STATUSES, Job, JobStatus, LogType
from scouter.models import CrawlConfig, CrawlSummary
from scouter.postprocess import Categorizer
from scouter.storage.db import get_connection, initialize_db
from scouter.storage.page_store import PageStore

CRAWL_COMMANDS = ("crawl",)


class CrawlWorker:

    def __init__(self, manager: JobManager, page_store: PageStore, worker_id: Optional[str] = None,
                 poll_interval: float = WORKER_POLL_INTERVAL, engine_factory=CrawlEngine,
                 max_consecutive_errors: int = 10, sleep=time.sleep):
        self.manager = manager
        self.page_store = page_store
        self.worker_id = worker_id or os.getenv("HOSTNAME") or f"worker-{os.getpid()}"
        self.poll_interval = poll_interval
        self.engine_factory = engine_factory
        self.max_consecutive_errors = max_consecutive_errors
        self.sleep = sleep
        self.running = False
        self._context = {"context": self.worker_id}

    def recover(self):
        requeued, stopped = self.manager.recover_orphans()
        for job in requeued:
            logger.warning(f"[WORKER] Job #{job.id} ({job.project_dir}) -> re-queued", extra=self._context)
        for job in stopped:
            logger.warning(f"[WORKER] Job #{job.id} ({job.project_dir}) -> stopped", extra=self._context)

    def run_once(self) -> Optional[CrawlSummary]:
        """Claims and runs at most one queued job. Returns None when the queue was empty."""
        job = self.manager.store.claim_next_queued(os.getpid())
        if job is None:
            return None
        logger.info(f"[WORKER] Picked up job #{job.id} (project: {job.project_dir})", extra=self._context)
        return self.execute(job)

    def execute(self, job: Job) -> Optional[CrawlSummary]:
        if job.command not in CRAWL_COMMANDS:
            self.manager.fail(job.id, f"Unknown command '{job.command}'")
            return None

        crawl = self.page_store.get_crawl(job.crawl_id) if job.crawl_id is not None \
            else self.page_store.get_crawl_by_path(job.project_dir)
        if crawl is None:
            self.manager.fail(job.id, f"Crawl record not found for {job.project_dir}")
            return None

        try:
            config = CrawlConfig.from_dict(crawl["config"])
        except ConfigurationError as e:
            self.manager.fail(job.id, f"Invalid crawl configuration: {e}")
            return None

        try:
            categorizer = Categorizer.for_crawl(crawl["config"])
        except (ConfigurationError, OSError) as e:
            logger.warning(f"[WORKER] Categorization disabled for job #{job.id}: {e}", extra=self._context)
            self.manager.add_log(job.id, f"Categorization disabled: {e}", LogType.WARNING)
            categorizer = None

        self.manager.add_log(job.id, f"Worker {self.worker_id} started processing", LogType.INFO)
        try:
            engine = self.engine_factory(config, crawl["id"], job.id, self.manager, self.page_store,
                                         categorizer=categorizer)
            summary = engine.run()
        except Exception as e:
            logger.exception(f"[WORKER] Job #{job.id} crashed", extra=self._context)
            self.manager.fail(job.id, f"Crawl failed: {e}")
            return None

        self._finalize(job.id, summary)
        return summary

    def _finalize(self, job_id: int, summary: CrawlSummary):
        current = self.manager.get_job(job_id)
        if current is None:
            logger.warning(f"[WORKER] Job #{job_id} was deleted while running", extra=self._context)
            return
        if current.status == JobStatus.STOPPING:
            self.manager.mark_stopped(job_id)
            logger.info(f"[WORKER] Job #{job_id} stopped by user", extra=self._context)
        elif current.status == JobStatus.RUNNING:
            self.manager.complete(job_id)
            logger.info(f"[WORKER] Job #{job_id} completed ({summary.processed} pages)", extra=self._context)
        elif current.status in TERMINAL_STATUSES:
            logger.info(f"[WORKER] Job #{job_id} already {current.status.value}", extra=self._context)

    def run_forever(self):
        self.running = True
        self._install_signal_handlers()
        self.recover()
        logger.info(f"[WORKER] Started, polling every {self.poll_interval}s", extra=self._context)

        consecutive_errors = 0
        while self.running:
            try:
                summary = self.run_once()
                consecutive_errors = 0
            except Exception:
                consecutive_errors += 1
                logger.exception(
                    f"[WORKER] Poll error ({consecutive_errors}/{self.max_consecutive_errors})", extra=self._context
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    logger.error("[WORKER] Too many consecutive errors, exiting", extra=self._context)
                    raise
                self.sleep(self.poll_interval)
                continue
            if summary is None:
                self.sleep(self.poll_interval)
        logger.info("[WORKER] Shut down", extra=self._context)

    def stop(self, *_):
        logger.info("[WORKER] Shutdown requested, finishing current job", extra=self._context)
        self.running = False

    def _install_signal_handlers(self):
        signal.signal(signal.SIGTERM, self.stop)
        signal.signal(signal.SIGINT, self.stop)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Scouter crawl worker")
    parser.add_argument("--once", action="store_true", help="Run at most one queued job, then exit")
    parser.add_argument("--database", default=None, help="SQLite database path")
    parser.add_argument("--worker-id", default=None, help="Name used in logs (default: $HOSTNAME)")
    args = parser.parse_args(argv)

    conn = get_connection(args.database)
    initialize_db(conn)
    worker = CrawlWorker(build_manager(conn), PageStore(conn), worker_id=args.worker_id)
    try:
        if args.once:
            worker.recover()
            worker.run_once()
        else:
            worker.run_forever()
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
