"""
Verification Scenarios for the progress watchdog
"""

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from scouter.jobs.manager import JobManager
from scouter.jobs.models import Job, JobStatus, LogType
from scouter.jobs.sqlite_storage import SQLiteJobStore
from scouter.jobs.watchdog import KILL_LOG_MESSAGE, SnapshotStore, Watchdog, main
from scouter.storage.db import get_connection, initialize_db


class TestWatchdog(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "scouter.db")
        self.conn = get_connection(self.db_path)
        initialize_db(self.conn)
        self.store = SQLiteJobStore(self.conn)
        self.manager = JobManager(self.store)
        self.state_file = Path(self.tmp.name) / "watchdog_state.json"
        self.now = [1000.0]
        self.watchdog = Watchdog(self.manager, self.state_file, clock=lambda: self.now[0])

    def tearDown(self):
        self.conn.close()
        self.tmp.cleanup()

    def running_job(self, project_dir="/crawls/example"):
        self.manager.create_job(project_dir)
        return self.store.claim_next_queued(pid=os.getpid())

    def test_first_sighting_records_baseline(self):
        job = self.running_job()

        report = self.watchdog.check()

        self.assertEqual(report.baselined, [job.id])
        self.assertEqual(report.killed, [])
        state = json.loads(self.state_file.read_text())
        self.assertEqual(state[str(job.id)]["progress"], 0)
        self.assertEqual(self.manager.get_job(job.id).status, JobStatus.RUNNING)

    def test_stuck_job_is_killed(self):
        """Scenario: progress unchanged between two cycles -> job failed with a diagnostic."""
        job = self.running_job()
        self.manager.update_progress(job.id, 45)
        self.watchdog.check()

        report = self.watchdog.check()

        self.assertEqual(report.killed, [job.id])
        failed = self.manager.get_job(job.id)
        self.assertEqual(failed.status, JobStatus.FAILED)
        self.assertTrue(failed.error.startswith("WATCHDOG: Job killed because stuck at 45% for > 1 check cycle"))
        self.assertIn("still alive", failed.error)
        logs = self.manager.get_logs(job.id)
        self.assertEqual((logs[-1].message, logs[-1].type), (KILL_LOG_MESSAGE, LogType.ERROR))
        self.assertFalse(self.state_file.exists())

    def test_progressing_job_is_kept(self):
        job = self.running_job()
        self.watchdog.check()
        self.manager.update_progress(job.id, 10)

        report = self.watchdog.check()

        self.assertEqual(report.healthy, [job.id])
        self.assertEqual(self.manager.get_job(job.id).status, JobStatus.RUNNING)
        state = json.loads(self.state_file.read_text())
        self.assertEqual(state[str(job.id)]["progress"], 10)

    def test_dry_run_changes_nothing(self):
        job = self.running_job()
        self.watchdog.check()
        before = self.state_file.read_text()

        report = self.watchdog.check(dry_run=True)

        self.assertTrue(report.dry_run)
        self.assertEqual(report.killed, [job.id])
        self.assertEqual(self.manager.get_job(job.id).status, JobStatus.RUNNING)
        self.assertEqual(self.state_file.read_text(), before)

    def test_min_interval_delays_kill(self):
        job = self.running_job()
        watchdog = Watchdog(self.manager, self.state_file, min_interval=300, clock=lambda: self.now[0])
        watchdog.check()

        self.now[0] += 60
        self.assertEqual(watchdog.check().waiting, [job.id])
        state = json.loads(self.state_file.read_text())
        self.assertEqual(state[str(job.id)]["timestamp"], 1000.0)

        self.now[0] += 300
        self.assertEqual(watchdog.check().killed, [job.id])

    def test_no_running_jobs_clears_state(self):
        self.state_file.write_text(json.dumps({"7": {"progress": 3, "timestamp": 1.0}}))

        report = self.watchdog.check()

        self.assertEqual(report.checked, 0)
        self.assertFalse(self.state_file.exists())

    def test_finished_jobs_leave_the_snapshot(self):
        first = self.running_job("/crawls/a")
        second = self.running_job("/crawls/b")
        self.watchdog.check()
        self.manager.complete(first.id)
        self.manager.update_progress(second.id, 5)

        self.watchdog.check()

        state = json.loads(self.state_file.read_text())
        self.assertEqual(list(state), [str(second.id)])

    def test_unreadable_state_starts_fresh(self):
        job = self.running_job()
        self.state_file.write_text("{not json")

        report = self.watchdog.check()

        self.assertEqual(report.baselined, [job.id])

    def test_main_prints_summary(self):
        self.running_job()
        with patch.dict("os.environ", {"JOB_STORE": "sqlite"}):
            self.assertEqual(main(["--database", self.db_path, "--state-file", str(self.state_file)]), 0)
        self.assertTrue(self.state_file.exists())

    def test_main_watches_the_mysql_job_table(self):
        """Scenario: JOB_STORE=mysql, the running job only exists in MySQL."""
        pool = MagicMock()
        cursor = pool.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [(5, "/crawls/example", "running", 40, None, "crawl", 7, 4242, None,
                                         "2026-01-06 05:32:41", "2026-01-06 05:32:45", None)]

        with patch.dict("os.environ", {"JOB_STORE": "mysql"}), \
                patch("scouter.jobs.manager.connect_from_env", return_value=pool):
            self.assertEqual(main(["--database", self.db_path, "--state-file", str(self.state_file)]), 0)

        self.assertEqual(json.loads(self.state_file.read_text())["5"]["progress"], 40)
        self.assertIn("FROM jobs", cursor.execute.call_args_list[0][0][0])


class TestWatchdogRace(unittest.TestCase):
    def test_lost_cas_rebaselines(self):
        """Scenario: the job progressed between the listing and the kill, the CAS fails and nothing is killed."""
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        state_file = Path(tmp.name) / "state.json"
        SnapshotStore(state_file).save({"3": {"progress": 20, "timestamp": 1.0, "project_dir": "/p"}})

        manager = MagicMock()
        manager.store.list.return_value = [Job(id=3, project_dir="/p", status=JobStatus.RUNNING, progress=20)]
        manager.store.transition.return_value = False
        manager.get_job.return_value = Job(id=3, project_dir="/p", status=JobStatus.RUNNING, progress=30)

        report = Watchdog(manager, state_file, clock=lambda: 50.0).check()

        self.assertEqual(report.killed, [])
        manager.add_log.assert_not_called()
        self.assertEqual(manager.store.transition.call_args[1]["expected_progress"], 20)
        self.assertEqual(SnapshotStore(state_file).load()["3"]["progress"], 30)


if __name__ == "__main__":
    unittest.main()
