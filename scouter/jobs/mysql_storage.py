import os
from typing import Iterable, List, Optional

import pymysql

from scouter.jobs.models import ACTIVE_ORDER, Job, JobLogEntry, JobStatus, LogType
from scouter.jobs.storage import (
    JOB_COLUMNS,
    JobStore,
    crawl_mirror_fields,
    job_from_row,
    transition_fields,
    utcnow,
)

SELECT_JOB = f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs"
ORDER_ACTIVE = "FIELD(status, " + ", ".join(f"'{s.value}'" for s in ACTIVE_ORDER) + ") = 0, " \
    "FIELD(status, " + ", ".join(f"'{s.value}'" for s in ACTIVE_ORDER) + "), created_at, id"


def connect_from_env():
    """PyMySQL connection from MYSQL_* environment variables."""
    return pymysql.connect(
        host=os.getenv("MYSQL_HOST", "localhost"),
        port=int(os.getenv("MYSQL_PORT", 3306)),
        user=os.getenv("MYSQL_USER"),
        password=os.getenv("MYSQL_PASSWORD"),
        database=os.getenv("MYSQL_DATABASE"),
        charset="utf8mb4",
        autocommit=False,
    )


class MySQLJobStore(JobStore):
    """
    MySQL implementation of JobStore for deployments where the dashboard reads a MySQL job table.
    Transactions: begin -> CAS update -> crawl mirror update -> commit, rollback on any error.
    """

    def __init__(self, connection):
        self._pool = connection

    def create(self, project_dir, project_name=None, command="crawl", crawl_id=None) -> Job:
        now = utcnow()
        with self._pool.cursor() as cursor:
            try:
                self._pool.begin()
                cursor.execute(
                    "INSERT INTO jobs (project_dir, project_name, command, crawl_id, status, progress, created_at) "
                    "VALUES (%s, %s, %s, %s, %s, 0, %s)",
                    (project_dir, project_name, command, crawl_id, JobStatus.PENDING.value, now),
                )
                job_id = cursor.lastrowid
                self._mirror(cursor, job_id, JobStatus.PENDING, now)
                self._pool.commit()
            except Exception:
                self._pool.rollback()
                raise
        return Job(id=job_id, project_dir=project_dir, status=JobStatus.PENDING, project_name=project_name,
                   command=command, crawl_id=crawl_id, created_at=now)

    def get(self, job_id) -> Optional[Job]:
        row = self._read(f"{SELECT_JOB} WHERE id = %s", (job_id,))
        return job_from_row(row) if row else None

    def get_by_project(self, project_dir) -> Optional[Job]:
        row = self._read(
            f"{SELECT_JOB} WHERE project_dir = %s ORDER BY created_at DESC, id DESC LIMIT 1", (project_dir,)
        )
        return job_from_row(row) if row else None

    def list(self, statuses: Optional[Iterable[JobStatus]] = None) -> List[Job]:
        sql, params = SELECT_JOB, []
        if statuses is not None:
            statuses = list(statuses)
            if not statuses:
                return []
            sql += f" WHERE status IN ({', '.join('%s' for _ in statuses)})"
            params = [s.value for s in statuses]
        rows = self._read(f"{sql} ORDER BY {ORDER_ACTIVE}", params, many=True)
        return [job_from_row(r) for r in rows]

    def transition(self, job_id, from_statuses, to_status, pid=None, error=None, expected_progress=None) -> bool:
        from_statuses = list(from_statuses)
        now = utcnow()
        fields = transition_fields(to_status, now, pid=pid, error=error)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        sql = (
            f"UPDATE jobs SET {assignments} "
            f"WHERE id = %s AND status IN ({', '.join('%s' for _ in from_statuses)})"
        )
        params = list(fields.values()) + [job_id] + [s.value for s in from_statuses]
        if expected_progress is not None:
            sql += " AND progress = %s"
            params.append(int(expected_progress))

        with self._pool.cursor() as cursor:
            try:
                self._pool.begin()
                affected = cursor.execute(sql, params)
                if affected == 0:
                    self._pool.rollback()
                    return False
                self._mirror(cursor, job_id, to_status, now)
                self._pool.commit()
                return True
            except Exception as e:
                self._pool.rollback()
                raise RuntimeError(f"Failed to move job {job_id} to {to_status.value}: {e}") from e

    def claim_next_queued(self, pid) -> Optional[Job]:
        now = utcnow()
        fields = transition_fields(JobStatus.RUNNING, now, pid=pid)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        with self._pool.cursor() as cursor:
            try:
                self._pool.begin()
                cursor.execute(
                    "SELECT id FROM jobs WHERE status = %s ORDER BY created_at, id LIMIT 1 FOR UPDATE SKIP LOCKED",
                    (JobStatus.QUEUED.value,),
                )
                row = cursor.fetchone()
                if not row:
                    self._pool.rollback()
                    return None
                job_id = row[0]
                cursor.execute(f"UPDATE jobs SET {assignments} WHERE id = %s", list(fields.values()) + [job_id])
                self._mirror(cursor, job_id, JobStatus.RUNNING, now)
                self._pool.commit()
            except Exception:
                self._pool.rollback()
                raise
        return self.get(job_id)

    def update_progress(self, job_id, progress) -> bool:
        with self._pool.cursor() as cursor:
            affected = cursor.execute(
                "UPDATE jobs SET progress = GREATEST(progress, %s) WHERE id = %s AND status = %s",
                (int(progress), job_id, JobStatus.RUNNING.value),
            )
            self._pool.commit()
        return bool(affected)

    def reset_progress(self, job_id, progress=0) -> bool:
        with self._pool.cursor() as cursor:
            affected = cursor.execute("UPDATE jobs SET progress = %s WHERE id = %s", (int(progress), job_id))
            self._pool.commit()
        return bool(affected)

    def add_log(self, job_id, message, log_type=LogType.INFO) -> None:
        with self._pool.cursor() as cursor:
            cursor.execute(
                "INSERT INTO job_logs (job_id, message, type, created_at) VALUES (%s, %s, %s, %s)",
                (job_id, message, LogType(log_type).value, utcnow()),
            )
            self._pool.commit()

    def get_logs(self, job_id, limit=100, offset=0) -> List[JobLogEntry]:
        rows = self._read(
            "SELECT job_id, message, type, created_at FROM job_logs WHERE job_id = %s ORDER BY id LIMIT %s OFFSET %s",
            (job_id, limit, offset),
            many=True,
        )
        return [JobLogEntry(job_id=r[0], message=r[1], type=LogType(r[2]), created_at=str(r[3])) for r in rows]

    def delete(self, job_id) -> bool:
        with self._pool.cursor() as cursor:
            affected = cursor.execute("DELETE FROM jobs WHERE id = %s", (job_id,))
            self._pool.commit()
        return bool(affected)

    def _read(self, sql, params, many=False):
        """Read-only query. Ends its transaction so the next read is not served from an old snapshot."""
        with self._pool.cursor() as cursor:
            cursor.execute(sql, params)
            result = cursor.fetchall() if many else cursor.fetchone()
        self._pool.commit()
        return result

    @staticmethod
    def _mirror(cursor, job_id, to_status, now):
        fields = crawl_mirror_fields(to_status, now)
        assignments = ", ".join(f"c.{column} = %s" for column in fields)
        cursor.execute(
            f"UPDATE crawls c JOIN jobs j ON (c.id = j.crawl_id OR c.path = j.project_dir) "
            f"SET {assignments} WHERE j.id = %s",
            list(fields.values()) + [job_id],
        )
