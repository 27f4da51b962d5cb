from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from scouter.jobs.models import (
    CRAWL_STATUS_MAP,
    IN_PROGRESS_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobLogEntry,
    JobStatus,
    LogType,
)

JOB_COLUMNS = (
    "id", "project_dir", "status", "progress", "project_name", "command", "crawl_id",
    "pid", "error", "created_at", "started_at", "finished_at",
)


def utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def job_from_row(row) -> Job:
    values = dict(zip(JOB_COLUMNS, row)) if not isinstance(row, dict) else dict(row)
    values["status"] = JobStatus(values["status"])
    values["progress"] = int(values.get("progress") or 0)
    return Job(**{k: values.get(k) for k in JOB_COLUMNS})


def transition_fields(to_status: JobStatus, now: str, pid=None, error=None) -> Dict[str, object]:
    """
    Column values written together with a status change.
    running records pid/started_at, terminal states record finished_at, failed records error,
    re-queueing clears the previous run.
    """
    fields: Dict[str, object] = {"status": to_status.value}
    if to_status == JobStatus.RUNNING:
        fields.update(pid=pid, started_at=now, finished_at=None)
    elif to_status == JobStatus.QUEUED:
        fields.update(pid=None, started_at=None, finished_at=None)
    if to_status in TERMINAL_STATUSES:
        fields["finished_at"] = now
    if to_status == JobStatus.FAILED:
        fields["error"] = error
    if to_status == JobStatus.COMPLETED:
        fields["progress"] = 100
    return fields


def crawl_mirror_fields(to_status: JobStatus, now: str) -> Dict[str, object]:
    fields: Dict[str, object] = {
        "status": CRAWL_STATUS_MAP[to_status],
        "in_progress": 1 if to_status in IN_PROGRESS_STATUSES else 0,
    }
    if to_status == JobStatus.RUNNING:
        fields["started_at"] = now
        fields["finished_at"] = None
    if to_status in TERMINAL_STATUSES:
        fields["finished_at"] = now
    return fields


class JobStore(ABC):
    """
    Abstract interface for job storage with CAS (Compare-And-Swap) status changes.
    Every status change updates the paired crawl record in the same atomic unit.
    """

    @abstractmethod
    def create(self, project_dir: str, project_name: Optional[str] = None, command: str = "crawl",
               crawl_id: Optional[int] = None) -> Job:
        """Insert a new job in PENDING state."""
        pass

    @abstractmethod
    def get(self, job_id: int) -> Optional[Job]:
        pass

    @abstractmethod
    def get_by_project(self, project_dir: str) -> Optional[Job]:
        """Most recent job of a crawl path."""
        pass

    @abstractmethod
    def list(self, statuses: Optional[Iterable[JobStatus]] = None) -> List[Job]:
        pass

    @abstractmethod
    def transition(self, job_id: int, from_statuses: Iterable[JobStatus], to_status: JobStatus,
                   pid: Optional[int] = None, error: Optional[str] = None,
                   expected_progress: Optional[int] = None) -> bool:
        """
        Atomically change status ONLY if the current status is one of from_statuses
        (and, when expected_progress is given, progress still equals it).
        Returns True if the transition succeeded, False otherwise.
        """
        pass

    @abstractmethod
    def claim_next_queued(self, pid: int) -> Optional[Job]:
        """Atomically move the oldest QUEUED job to RUNNING and return it."""
        pass

    @abstractmethod
    def update_progress(self, job_id: int, progress: int) -> bool:
        """Raise progress (never lower it) while the job is RUNNING."""
        pass

    @abstractmethod
    def reset_progress(self, job_id: int, progress: int = 0) -> bool:
        """Operator reset, the only way progress goes down."""
        pass

    @abstractmethod
    def add_log(self, job_id: int, message: str, log_type: LogType = LogType.INFO) -> None:
        pass

    @abstractmethod
    def get_logs(self, job_id: int, limit: int = 100, offset: int = 0) -> List[JobLogEntry]:
        pass

    @abstractmethod
    def delete(self, job_id: int) -> bool:
        pass
