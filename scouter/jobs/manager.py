"""
FILE DESCRIPTION: Job lifecycle state machine on top of a JobStore.
KEY FUNCTIONS/CLASSES: JobManager, build_manager

FLOW: pending -> queued -> running -> {stopping -> stopped | completed | failed}
Every change is validated against ALLOWED_TRANSITIONS, then applied as a compare-and-set so a
progress write from the engine can never resurrect a job the watchdog already failed.
"""

import os
from typing import List, Optional, Tuple

from scouter.core import logger
from scouter.errors import InvalidTransition, JobNotFound
from scouter.jobs.models import (
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobLogEntry,
    JobStatus,
    LogType,
    can_transition,
)
from scouter.jobs.mysql_storage import MySQLJobStore, connect_from_env
from scouter.jobs.sqlite_storage import SQLiteJobStore
from scouter.jobs.storage import JobStore


class JobManager:

    def __init__(self, store: JobStore):
        self.store = store

    # -------------------------------
    # CREATION / LOOKUP
    # -------------------------------
    def create_job(self, project_dir: str, project_name: Optional[str] = None, command: str = "crawl",
                   crawl_id: Optional[int] = None, queue: bool = True) -> Job:
        job = self.store.create(project_dir, project_name=project_name, command=command, crawl_id=crawl_id)
        logger.info(f"[JOB] Created job {job.id} for {project_dir}", extra={"context": f"job-{job.id}"})
        if queue:
            self.transition(job.id, JobStatus.QUEUED)
            self.add_log(job.id, "Job queued", LogType.INFO)
            job = self.store.get(job.id)
        return job

    def get_job(self, job_id: int) -> Optional[Job]:
        return self.store.get(job_id)

    def require_job(self, job_id: int) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def get_job_by_project(self, project_dir: str) -> Optional[Job]:
        return self.store.get_by_project(project_dir)

    def get_running_jobs(self) -> List[Job]:
        """Active jobs ordered running, stopping, queued, pending, then by creation time."""
        return self.store.list(IN_PROGRESS_STATUSES)

    def delete_job(self, job_id: int) -> bool:
        job = self.require_job(job_id)
        if job.in_progress:
            raise InvalidTransition(job_id, job.status.value, "deleted")
        return self.store.delete(job_id)

    # -------------------------------
    # STATUS TRANSITIONS
    # -------------------------------
    def transition(self, job_id: int, to_status: JobStatus, pid: Optional[int] = None,
                   error: Optional[str] = None) -> bool:
        """
        Returns True when applied, False when another actor changed the job first.
        Raises InvalidTransition when the change is not allowed from the current status.
        """
        job = self.require_job(job_id)
        if not can_transition(job.status, to_status):
            raise InvalidTransition(job_id, job.status.value, to_status.value)
        applied = self.store.transition(job_id, [job.status], to_status, pid=pid, error=error)
        if applied:
            logger.info(f"[JOB] {job.status.value} -> {to_status.value}", extra={"context": f"job-{job_id}"})
        else:
            logger.warning(
                f"[JOB] {job.status.value} -> {to_status.value} lost a race, status changed concurrently",
                extra={"context": f"job-{job_id}"},
            )
        return applied

    def start(self, job_id: int, pid: int) -> bool:
        return self.transition(job_id, JobStatus.RUNNING, pid=pid)

    def request_stop(self, job_id: int) -> bool:
        """Operator stop: a running job goes through stopping, a job that never started stops at once."""
        job = self.require_job(job_id)
        if job.status == JobStatus.RUNNING:
            applied = self.transition(job_id, JobStatus.STOPPING)
        elif job.status in (JobStatus.QUEUED, JobStatus.PENDING):
            applied = self.transition(job_id, JobStatus.STOPPED)
        else:
            return False
        if applied:
            self.add_log(job_id, "Stop requested", LogType.WARNING)
        return applied

    def mark_stopped(self, job_id: int) -> bool:
        applied = self.transition(job_id, JobStatus.STOPPED)
        if applied:
            self.add_log(job_id, "Crawl stopped by user", LogType.WARNING)
        return applied

    def complete(self, job_id: int) -> bool:
        applied = self.transition(job_id, JobStatus.COMPLETED)
        if applied:
            self.add_log(job_id, "Crawl completed", LogType.SUCCESS)
        return applied

    def fail(self, job_id: int, error: str) -> bool:
        """Forces failure from any non-terminal state."""
        job = self.require_job(job_id)
        if job.status in TERMINAL_STATUSES:
            return False
        applied = self.store.transition(
            job_id, [s for s in JobStatus if s not in TERMINAL_STATUSES], JobStatus.FAILED, error=error
        )
        if applied:
            logger.error(f"[JOB] failed: {error}", extra={"context": f"job-{job_id}"})
            self.add_log(job_id, error, LogType.ERROR)
        return applied

    def is_stop_requested(self, job_id: int) -> bool:
        """True once the job left RUNNING: operator stop, watchdog failure or deletion."""
        job = self.store.get(job_id)
        return job is None or job.status != JobStatus.RUNNING

    # -------------------------------
    # PROGRESS / LOGS
    # -------------------------------
    def update_progress(self, job_id: int, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        return self.store.update_progress(job_id, progress)

    def reset_progress(self, job_id: int, progress: int = 0) -> bool:
        logger.info(f"[JOB] Progress reset to {progress}", extra={"context": f"job-{job_id}"})
        return self.store.reset_progress(job_id, max(0, min(100, int(progress))))

    def add_log(self, job_id: int, message: str, log_type=LogType.INFO) -> None:
        self.store.add_log(job_id, message, LogType(log_type))

    def get_logs(self, job_id: int, limit: int = 100, offset: int = 0) -> List[JobLogEntry]:
        return self.store.get_logs(job_id, limit=limit, offset=offset)

    # -------------------------------
    # RECOVERY
    # -------------------------------
    def recover_orphans(self) -> Tuple[List[Job], List[Job]]:
        """
        Worker start-up: running jobs left by a dead worker are re-queued,
        stopping jobs are finalized as stopped. Returns (requeued, stopped).
        """
        requeued, stopped = [], []
        for job in self.store.list([JobStatus.RUNNING, JobStatus.STOPPING]):
            if job.status == JobStatus.RUNNING:
                if self.store.transition(job.id, [JobStatus.RUNNING], JobStatus.QUEUED):
                    self.add_log(job.id, "Job recovered after restart - re-queued", LogType.WARNING)
                    requeued.append(job)
            elif self.store.transition(job.id, [JobStatus.STOPPING], JobStatus.STOPPED):
                self.add_log(job.id, "Job stopped during restart", LogType.WARNING)
                stopped.append(job)
        if requeued or stopped:
            logger.warning(f"[JOB] Recovered {len(requeued)} orphaned running and {len(stopped)} stopping job(s)")
        return requeued, stopped


def build_manager(conn) -> JobManager:
    """JOB_STORE=mysql keeps jobs in MySQL (MYSQL_* variables), otherwise in the SQLite database."""
    if os.getenv("JOB_STORE", "sqlite").lower() == "mysql":
        return JobManager(MySQLJobStore(connect_from_env()))
    return JobManager(SQLiteJobStore(conn))
