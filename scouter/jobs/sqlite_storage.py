import threading
from typing import Iterable, List, Optional

from scouter.jobs.models import ACTIVE_ORDER, Job, JobLogEntry, JobStatus, LogType
from scouter.jobs.storage import (
    JOB_COLUMNS,
    JobStore,
    crawl_mirror_fields,
    job_from_row,
    transition_fields,
    utcnow,
)
from scouter.storage.db import with_retry

SELECT_JOB = f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs"

ORDER_ACTIVE = "CASE status " + " ".join(
    f"WHEN '{status.value}' THEN {rank}" for rank, status in enumerate(ACTIVE_ORDER)
) + f" ELSE {len(ACTIVE_ORDER)} END, created_at, id"


class SQLiteJobStore(JobStore):
    """
    SQLite implementation of JobStore.
    Status changes are `UPDATE ... WHERE status IN (...)` plus the crawl mirror update in one transaction.
    """

    def __init__(self, conn):
        self._conn = conn
        self._lock = threading.Lock()

    @with_retry
    def create(self, project_dir, project_name=None, command="crawl", crawl_id=None) -> Job:
        now = utcnow()
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO jobs (project_dir, project_name, command, crawl_id, status, progress, created_at) "
                "VALUES (?, ?, ?, ?, ?, 0, ?)",
                (project_dir, project_name, command, crawl_id, JobStatus.PENDING.value, now),
            )
            job_id = cur.lastrowid
            self._mirror(job_id, JobStatus.PENDING, now)
        return self.get(job_id)

    def get(self, job_id) -> Optional[Job]:
        with self._lock:
            row = self._conn.execute(f"{SELECT_JOB} WHERE id = ?", (job_id,)).fetchone()
        return job_from_row(row) if row else None

    def get_by_project(self, project_dir) -> Optional[Job]:
        with self._lock:
            row = self._conn.execute(
                f"{SELECT_JOB} WHERE project_dir = ? ORDER BY created_at DESC, id DESC LIMIT 1", (project_dir,)
            ).fetchone()
        return job_from_row(row) if row else None

    def list(self, statuses: Optional[Iterable[JobStatus]] = None) -> List[Job]:
        sql, params = SELECT_JOB, []
        if statuses is not None:
            statuses = list(statuses)
            if not statuses:
                return []
            sql += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params = [s.value for s in statuses]
        with self._lock:
            rows = self._conn.execute(f"{sql} ORDER BY {ORDER_ACTIVE}", params).fetchall()
        return [job_from_row(r) for r in rows]

    @with_retry
    def transition(self, job_id, from_statuses, to_status, pid=None, error=None, expected_progress=None) -> bool:
        from_statuses = list(from_statuses)
        now = utcnow()
        fields = transition_fields(to_status, now, pid=pid, error=error)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        sql = (
            f"UPDATE jobs SET {assignments} "
            f"WHERE id = ? AND status IN ({', '.join('?' for _ in from_statuses)})"
        )
        params = list(fields.values()) + [job_id] + [s.value for s in from_statuses]
        if expected_progress is not None:
            sql += " AND progress = ?"
            params.append(int(expected_progress))
        with self._lock, self._conn:
            cur = self._conn.execute(sql, params)
            if cur.rowcount == 0:
                return False
            self._mirror(job_id, to_status, now)
        return True

    def claim_next_queued(self, pid) -> Optional[Job]:
        while True:
            with self._lock:
                row = self._conn.execute(
                    "SELECT id FROM jobs WHERE status = ? ORDER BY created_at, id LIMIT 1",
                    (JobStatus.QUEUED.value,),
                ).fetchone()
            if row is None:
                return None
            # another worker may win the race for this row, then try the next one
            if self.transition(row[0], [JobStatus.QUEUED], JobStatus.RUNNING, pid=pid):
                return self.get(row[0])

    @with_retry
    def update_progress(self, job_id, progress) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE jobs SET progress = MAX(progress, ?) WHERE id = ? AND status = ?",
                (int(progress), job_id, JobStatus.RUNNING.value),
            )
        return cur.rowcount > 0

    @with_retry
    def reset_progress(self, job_id, progress=0) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("UPDATE jobs SET progress = ? WHERE id = ?", (int(progress), job_id))
        return cur.rowcount > 0

    @with_retry
    def add_log(self, job_id, message, log_type=LogType.INFO) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO job_logs (job_id, message, type, created_at) VALUES (?, ?, ?, ?)",
                (job_id, message, LogType(log_type).value, utcnow()),
            )

    def get_logs(self, job_id, limit=100, offset=0) -> List[JobLogEntry]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT job_id, message, type, created_at FROM job_logs WHERE job_id = ? "
                "ORDER BY id LIMIT ? OFFSET ?",
                (job_id, limit, offset),
            ).fetchall()
        return [JobLogEntry(job_id=r[0], message=r[1], type=LogType(r[2]), created_at=r[3]) for r in rows]

    @with_retry
    def delete(self, job_id) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        return cur.rowcount > 0

    def _mirror(self, job_id, to_status, now):
        fields = crawl_mirror_fields(to_status, now)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        self._conn.execute(
            f"UPDATE crawls SET {assignments} WHERE id = (SELECT crawl_id FROM jobs WHERE id = ?) "
            f"OR path = (SELECT project_dir FROM jobs WHERE id = ?)",
            list(fields.values()) + [job_id, job_id],
        )
