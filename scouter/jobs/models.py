from enum import Enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional


class JobStatus(Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


class LogType(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


# Mirrored status of the paired crawl record
CRAWL_STATUS_MAP: Dict[JobStatus, str] = {
    JobStatus.PENDING: "pending",
    JobStatus.QUEUED: "queued",
    JobStatus.RUNNING: "running",
    JobStatus.STOPPING: "stopping",
    JobStatus.STOPPED: "stopped",
    JobStatus.COMPLETED: "finished",
    JobStatus.FAILED: "error",
}

IN_PROGRESS_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.STOPPING,
})

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.STOPPED, JobStatus.COMPLETED, JobStatus.FAILED,
})

# Allowed status changes. RUNNING -> QUEUED only happens through orphan recovery.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.STOPPED, JobStatus.FAILED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.STOPPED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.STOPPING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED}),
    JobStatus.STOPPING: frozenset({JobStatus.STOPPED, JobStatus.FAILED}),
    JobStatus.STOPPED: frozenset(),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Order used when listing active jobs for the dashboard
ACTIVE_ORDER = (JobStatus.RUNNING, JobStatus.STOPPING, JobStatus.QUEUED, JobStatus.PENDING)


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


@dataclass(frozen=True)
class Job:
    """
    Durable record of one crawl execution.
    Invariants: id is the Primary Key; progress is 0..100 and never decreases while RUNNING.
    """
    id: int
    project_dir: str
    status: JobStatus
    progress: int = 0
    project_name: Optional[str] = None
    command: str = "crawl"
    crawl_id: Optional[int] = None
    pid: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    @property
    def crawl_status(self) -> str:
        return CRAWL_STATUS_MAP[self.status]


@dataclass(frozen=True)
class JobLogEntry:
    job_id: int
    message: str
    type: LogType
    created_at: str
