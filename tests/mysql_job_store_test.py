"""
Verification Scenarios for MySQL job status transitions
"""

import unittest
from unittest.mock import MagicMock

from scouter.jobs.models import JobStatus
from scouter.jobs.mysql_storage import MySQLJobStore

RUNNING_ROW = (5, "/crawls/example", "running", 0, None, "crawl", 7, 4242, None,
               "2026-01-06 05:32:41", "2026-01-06 05:32:45", None)
STOPPING_ROW = RUNNING_ROW[:2] + ("stopping",) + RUNNING_ROW[3:]


class TestMySQLJobTransitions(unittest.TestCase):
    def setUp(self):
        self.mock_pool = MagicMock()
        self.store = MySQLJobStore(self.mock_pool)
        self.mock_cursor = self.mock_pool.cursor.return_value.__enter__.return_value

    def test_successful_transition(self):
        """Scenario: job is still in the expected status."""
        # Sequence: CAS update (1 row) -> crawl mirror update
        self.mock_cursor.execute.side_effect = [1, 1]

        applied = self.store.transition(5, [JobStatus.RUNNING], JobStatus.COMPLETED)

        self.assertTrue(applied)
        self.mock_pool.begin.assert_called_once()
        self.mock_pool.commit.assert_called_once()
        self.mock_pool.rollback.assert_not_called()
        sql, params = self.mock_cursor.execute.call_args_list[0][0]
        self.assertIn("status IN (%s)", sql)
        self.assertEqual(params[-1], "running")

    def test_lost_race(self):
        """Scenario: another actor changed the status first, the CAS matches no row."""
        self.mock_cursor.execute.side_effect = [0]

        applied = self.store.transition(5, [JobStatus.RUNNING], JobStatus.FAILED, error="stuck")

        self.assertFalse(applied)
        self.mock_pool.rollback.assert_called_once()
        self.mock_pool.commit.assert_not_called()

    def test_expected_progress_guard(self):
        self.mock_cursor.execute.side_effect = [1, 1]

        self.store.transition(5, [JobStatus.RUNNING], JobStatus.FAILED, error="stuck", expected_progress=40)

        sql, params = self.mock_cursor.execute.call_args_list[0][0]
        self.assertTrue(sql.endswith("AND progress = %s"))
        self.assertEqual(params[-1], 40)
        self.assertIn("stuck", params)

    def test_database_error_rolls_back(self):
        self.mock_cursor.execute.side_effect = Exception("Deadlock found when trying to get lock")

        with self.assertRaises(RuntimeError) as cm:
            self.store.transition(5, [JobStatus.RUNNING], JobStatus.COMPLETED)

        self.assertIn("Deadlock", str(cm.exception))
        self.mock_pool.rollback.assert_called_once()
        self.mock_pool.commit.assert_not_called()

    def test_claim_empty_queue(self):
        self.mock_cursor.fetchone.return_value = None

        self.assertIsNone(self.store.claim_next_queued(pid=4242))
        self.mock_pool.rollback.assert_called_once()
        self.mock_pool.commit.assert_not_called()

    def test_claim_next_queued(self):
        """Scenario: oldest queued row is locked (SKIP LOCKED), moved to running and re-read."""
        # Sequence: SELECT ... FOR UPDATE -> UPDATE jobs -> crawl mirror -> SELECT job
        self.mock_cursor.fetchone.side_effect = [(5,), RUNNING_ROW]

        job = self.store.claim_next_queued(pid=4242)

        self.assertEqual(job.id, 5)
        self.assertEqual(job.status, JobStatus.RUNNING)
        self.assertEqual(job.pid, 4242)
        # claim commit, then the re-read ends its own transaction
        self.assertEqual(self.mock_pool.commit.call_count, 2)
        first_sql = self.mock_cursor.execute.call_args_list[0][0][0]
        self.assertIn("FOR UPDATE SKIP LOCKED", first_sql)

    def test_progress_update_is_monotonic_in_sql(self):
        self.mock_cursor.execute.return_value = 1

        self.assertTrue(self.store.update_progress(5, 60))

        sql, params = self.mock_cursor.execute.call_args[0]
        self.assertIn("GREATEST(progress, %s)", sql)
        self.assertEqual(params, (60, 5, "running"))

    def test_progress_update_on_stopped_job(self):
        self.mock_cursor.execute.return_value = 0
        self.assertFalse(self.store.update_progress(5, 60))


class TestMySQLJobReads(unittest.TestCase):
    def setUp(self):
        self.mock_pool = MagicMock()
        self.store = MySQLJobStore(self.mock_pool)
        self.mock_cursor = self.mock_pool.cursor.return_value.__enter__.return_value

    def test_get_ends_its_transaction(self):
        """Scenario: a stop request committed between two reads is visible to the second one."""
        self.mock_cursor.fetchone.side_effect = [RUNNING_ROW, STOPPING_ROW]

        self.assertEqual(self.store.get(5).status, JobStatus.RUNNING)
        self.mock_pool.commit.assert_called_once()
        self.assertEqual(self.store.get(5).status, JobStatus.STOPPING)
        self.assertEqual(self.mock_pool.commit.call_count, 2)
        self.mock_pool.begin.assert_not_called()

    def test_missing_job(self):
        self.mock_cursor.fetchone.return_value = None

        self.assertIsNone(self.store.get(99))
        self.mock_pool.commit.assert_called_once()

    def test_list_and_logs_end_their_transaction(self):
        self.mock_cursor.fetchall.side_effect = [[RUNNING_ROW], [(5, "Job queued", "info", "2026-01-06 05:32:41")]]

        jobs = self.store.list([JobStatus.RUNNING])
        logs = self.store.get_logs(5)

        self.assertEqual([j.id for j in jobs], [5])
        self.assertEqual(logs[0].message, "Job queued")
        self.assertEqual(self.mock_pool.commit.call_count, 2)


if __name__ == "__main__":
    unittest.main()
