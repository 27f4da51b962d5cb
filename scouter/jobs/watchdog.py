"""
FILE DESCRIPTION: Liveness supervisor for running crawl jobs.
KEY FUNCTIONS/CLASSES: SnapshotStore, WatchdogReport, Watchdog, main

FLOW: Loads the previous progress snapshot -> Lists running jobs -> First sighting records a baseline ->
Unchanged progress after min_interval fails the job -> Advanced progress refreshes the baseline ->
Saves the new snapshot (or removes it when nothing runs).
Meant to run periodically (cron / systemd timer); one invocation is one check cycle.
"""

import argparse
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from scouter.core import WATCHDOG_STATE_FILE, env_float, logger
from scouter.jobs.manager import JobManager, build_manager
from scouter.jobs.models import TERMINAL_STATUSES, Job, JobStatus, LogType
from scouter.storage.db import get_connection, initialize_db

KILL_LOG_MESSAGE = "WATCHDOG: Job killed. No progress detected since last check."


class SnapshotStore:
    """JSON snapshot {job_id: {progress, timestamp, project_dir}} persisted between check cycles."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"[WATCHDOG] Unreadable state file {self.path}, starting fresh: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, state: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


@dataclass
class WatchdogReport:
    checked: int = 0
    baselined: List[int] = field(default_factory=list)
    healthy: List[int] = field(default_factory=list)
    waiting: List[int] = field(default_factory=list)
    killed: List[int] = field(default_factory=list)
    dry_run: bool = False


def process_alive(pid: Optional[int]) -> Optional[bool]:
    """None when the job has no recorded pid."""
    if not pid:
        return None
    try:
        return psutil.pid_exists(int(pid))
    except (ValueError, psutil.Error):
        return None


def kill_message(job: Job) -> str:
    message = f"WATCHDOG: Job killed because stuck at {job.progress}% for > 1 check cycle"
    alive = process_alive(job.pid)
    if alive is False:
        message += f" (worker process {job.pid} is gone)"
    elif alive:
        message += f" (worker process {job.pid} still alive)"
    return message


class Watchdog:
    """
    Fails running jobs whose progress did not move between two check cycles.
    The kill is a compare-and-set on (status=running, progress=observed) so a job that
    progressed or finished concurrently is left alone.
    """

    def __init__(self, manager: JobManager, state_file=WATCHDOG_STATE_FILE, min_interval: float = 0.0,
                 clock=time.time):
        self.manager = manager
        self.snapshots = SnapshotStore(state_file)
        self.min_interval = min_interval
        self.clock = clock

    def check(self, dry_run: bool = False) -> WatchdogReport:
        report = WatchdogReport(dry_run=dry_run)
        running = self.manager.store.list([JobStatus.RUNNING])
        report.checked = len(running)

        if not running:
            logger.info("[WATCHDOG] No running jobs")
            if not dry_run:
                self.snapshots.clear()
            return report

        previous = self.snapshots.load()
        now = self.clock()
        state: Dict[str, dict] = {}

        for job in running:
            key = str(job.id)
            snapshot = previous.get(key)
            context = {"context": f"job-{job.id}"}

            if snapshot is None:
                logger.info(f"[WATCHDOG] Baseline recorded at {job.progress}%", extra=context)
                report.baselined.append(job.id)
                state[key] = self._snapshot(job, now)
                continue

            if job.progress != snapshot.get("progress"):
                logger.info(
                    f"[WATCHDOG] Progress {snapshot.get('progress')}% -> {job.progress}%", extra=context
                )
                report.healthy.append(job.id)
                state[key] = self._snapshot(job, now)
                continue

            elapsed = now - float(snapshot.get("timestamp") or 0)
            if elapsed < self.min_interval:
                report.waiting.append(job.id)
                state[key] = snapshot
                continue

            message = kill_message(job)
            if dry_run:
                logger.warning(f"[WATCHDOG] Dry run, would kill: {message}", extra=context)
                report.killed.append(job.id)
                continue

            if self._kill(job, message):
                logger.error(f"[WATCHDOG] {message}", extra=context)
                report.killed.append(job.id)
            else:
                current = self.manager.get_job(job.id)
                if current is not None and current.status not in TERMINAL_STATUSES:
                    state[key] = self._snapshot(current, now)

        if not dry_run:
            if state:
                self.snapshots.save(state)
            else:
                self.snapshots.clear()

        logger.info(
            f"[WATCHDOG] checked={report.checked} baselined={len(report.baselined)} "
            f"healthy={len(report.healthy)} killed={len(report.killed)}"
            + (" (dry run)" if dry_run else "")
        )
        return report

    def _kill(self, job: Job, message: str) -> bool:
        applied = self.manager.store.transition(
            job.id, [JobStatus.RUNNING], JobStatus.FAILED, error=message, expected_progress=job.progress
        )
        if applied:
            self.manager.add_log(job.id, KILL_LOG_MESSAGE, LogType.ERROR)
        return applied

    @staticmethod
    def _snapshot(job: Job, now: float) -> dict:
        return {"progress": job.progress, "timestamp": now, "project_dir": job.project_dir}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fail crawl jobs whose progress is stuck")
    parser.add_argument("--dry-run", action="store_true", help="Report only, change nothing")
    parser.add_argument("--state-file", default=str(WATCHDOG_STATE_FILE), help="Progress snapshot file")
    parser.add_argument("--min-interval", type=float, default=env_float("WATCHDOG_MIN_INTERVAL", 0.0),
                        help="Seconds a job must stay stuck before it is killed")
    parser.add_argument("--database", default=None, help="SQLite database path")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    conn = get_connection(args.database)
    try:
        initialize_db(conn)
        watchdog = Watchdog(build_manager(conn), args.state_file, min_interval=args.min_interval)
        report = watchdog.check(dry_run=args.dry_run)
    finally:
        conn.close()

    print("\n==============================")
    print("WATCHDOG SUMMARY" + (" (DRY RUN)" if report.dry_run else ""))
    print("==============================")
    print(f"Running jobs:     {report.checked}")
    print(f"New baselines:    {len(report.baselined)}")
    print(f"Progressing:      {len(report.healthy)}")
    print(f"Waiting:          {len(report.waiting)}")
    print(f"Killed:           {', '.join(map(str, report.killed)) or 0}")
    print("==============================\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
