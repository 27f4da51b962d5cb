"""
Verification Scenarios for the crawl worker and its final status handling
"""

import unittest
from unittest.mock import MagicMock, patch

from scouter.jobs.models import Job, JobStatus, LogType
from scouter.jobs.sqlite_storage import SQLiteJobStore
from scouter.jobs.manager import build_manager
from scouter.jobs.worker import CrawlWorker
from scouter.models import CrawlSummary

CRAWL = {
    "id": 7,
    "path": "/crawls/example",
    "config": {"general": {"start": "https://example.com/", "domains": ["example.com"]}, "advanced": {}},
}


def job(status=JobStatus.RUNNING, command="crawl", crawl_id=7):
    return Job(id=1, project_dir="/crawls/example", status=status, command=command, crawl_id=crawl_id)


class TestCrawlWorker(unittest.TestCase):
    def setUp(self):
        self.manager = MagicMock()
        self.page_store = MagicMock()
        self.page_store.get_crawl.return_value = CRAWL
        self.engine = MagicMock()
        self.engine.run.return_value = CrawlSummary(crawl_id=7, status="completed", processed=3)
        self.engine_factory = MagicMock(return_value=self.engine)
        self.worker = CrawlWorker(self.manager, self.page_store, worker_id="worker-test",
                                  engine_factory=self.engine_factory, sleep=MagicMock())

    def test_completed_crawl(self):
        self.manager.get_job.return_value = job(JobStatus.RUNNING)

        summary = self.worker.execute(job())

        self.assertEqual(summary.processed, 3)
        self.manager.complete.assert_called_once_with(1)
        self.manager.mark_stopped.assert_not_called()
        args, kwargs = self.engine_factory.call_args
        self.assertEqual(args[0].start_url, "https://example.com/")
        self.assertEqual(args[1:3], (7, 1))
        self.assertIsNotNone(kwargs["categorizer"])
        self.manager.add_log.assert_any_call(1, "Worker worker-test started processing", LogType.INFO)

    def test_stopped_crawl(self):
        """Scenario: the operator asked for a stop while the engine was running."""
        self.manager.get_job.return_value = job(JobStatus.STOPPING)

        self.worker.execute(job())

        self.manager.mark_stopped.assert_called_once_with(1)
        self.manager.complete.assert_not_called()

    def test_job_failed_by_watchdog_is_left_alone(self):
        self.manager.get_job.return_value = job(JobStatus.FAILED)

        self.worker.execute(job())

        self.manager.complete.assert_not_called()
        self.manager.mark_stopped.assert_not_called()
        self.manager.fail.assert_not_called()

    def test_engine_crash_fails_job(self):
        self.engine.run.side_effect = RuntimeError("boom")

        self.assertIsNone(self.worker.execute(job()))

        self.manager.fail.assert_called_once_with(1, "Crawl failed: boom")

    def test_unknown_command(self):
        self.worker.execute(job(command="export"))

        self.manager.fail.assert_called_once_with(1, "Unknown command 'export'")
        self.engine_factory.assert_not_called()

    def test_missing_crawl_record(self):
        self.page_store.get_crawl.return_value = None

        self.worker.execute(job())

        self.manager.fail.assert_called_once_with(1, "Crawl record not found for /crawls/example")

    def test_crawl_found_by_path(self):
        self.page_store.get_crawl_by_path.return_value = CRAWL
        self.manager.get_job.return_value = job(JobStatus.RUNNING)

        self.worker.execute(job(crawl_id=None))

        self.page_store.get_crawl_by_path.assert_called_once_with("/crawls/example")
        self.manager.complete.assert_called_once_with(1)

    def test_invalid_configuration(self):
        self.page_store.get_crawl.return_value = {"id": 7, "config": {"general": {"start": "not a url"}}}

        self.worker.execute(job())

        message = self.manager.fail.call_args[0][1]
        self.assertTrue(message.startswith("Invalid crawl configuration"))
        self.engine_factory.assert_not_called()

    def test_invalid_categories_disable_categorization(self):
        crawl = dict(CRAWL, config=dict(CRAWL["config"], categorization="Blog:\n  include: ['(unclosed']\n"))
        self.page_store.get_crawl.return_value = crawl
        self.manager.get_job.return_value = job(JobStatus.RUNNING)

        self.worker.execute(job())

        self.assertIsNone(self.engine_factory.call_args[1]["categorizer"])
        self.manager.complete.assert_called_once_with(1)

    def test_run_once_with_empty_queue(self):
        self.manager.store.claim_next_queued.return_value = None
        self.assertIsNone(self.worker.run_once())
        self.engine_factory.assert_not_called()

    def test_recover_delegates_to_manager(self):
        self.manager.recover_orphans.return_value = ([job()], [])
        self.worker.recover()
        self.manager.recover_orphans.assert_called_once()

    def test_run_forever_gives_up_after_repeated_errors(self):
        self.manager.recover_orphans.return_value = ([], [])
        self.manager.store.claim_next_queued.side_effect = RuntimeError("database is gone")
        worker = CrawlWorker(self.manager, self.page_store, worker_id="w", max_consecutive_errors=3,
                             sleep=MagicMock())

        with patch.object(CrawlWorker, "_install_signal_handlers"):
            with self.assertRaises(RuntimeError):
                worker.run_forever()

        self.assertEqual(self.manager.store.claim_next_queued.call_count, 3)

    def test_stop_ends_the_loop(self):
        self.manager.recover_orphans.return_value = ([], [])
        self.manager.store.claim_next_queued.return_value = None
        sleep = MagicMock(side_effect=lambda _: self.worker_under_test.stop())
        self.worker_under_test = CrawlWorker(self.manager, self.page_store, worker_id="w", sleep=sleep)

        with patch.object(CrawlWorker, "_install_signal_handlers"):
            self.worker_under_test.run_forever()

        self.assertFalse(self.worker_under_test.running)
        sleep.assert_called_once()


class TestBuildManager(unittest.TestCase):
    def test_sqlite_by_default(self):
        with patch.dict("os.environ", {"JOB_STORE": "sqlite"}):
            manager = build_manager(MagicMock())
        self.assertIsInstance(manager.store, SQLiteJobStore)

    def test_mysql_store(self):
        with patch.dict("os.environ", {"JOB_STORE": "mysql"}), \
                patch("scouter.jobs.manager.connect_from_env") as connect:
            manager = build_manager(MagicMock())
        connect.assert_called_once()
        self.assertEqual(type(manager.store).__name__, "MySQLJobStore")


if __name__ == "__main__":
    unittest.main()
