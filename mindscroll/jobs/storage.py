"""
SQLite storage layer for job records.

The job store is written only through guarded updates so that status moves
forward (queued -> active -> completed | failed) and never back, whatever
order or number of times the updates arrive in.
"""

import json
import time
from pathlib import Path
from typing import Optional, List, Dict, Any

from ..db import SQLiteStore
from .models import UploadJob, JobStatus, JobID


class JobStorage(SQLiteStore):
    """
    SQLite-based storage for job persistence.

    Features:
    - Thread-local connections, WAL mode (see SQLiteStore)
    - Monotonic, idempotent status writes
    - Structured job logs
    """

    schema_dir = Path(__file__).parent
    default_db_name = "jobs.db"

    # Job writes (guarded)

    def record_enqueued(self, job: UploadJob) -> bool:
        """
        Create the record for a newly enqueued job.

        Args:
            job: UploadJob in its initial state

        Returns:
            True if created, False if a record already existed
        """
        with self._transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO jobs (
                    job_id, upload_id, user_id, job_type, created_at,
                    source_type, source_ref, input_data,
                    status, progress, attempts_made, started_at, completed_at,
                    result, error
                ) VALUES (
                    :job_id, :upload_id, :user_id, :job_type, :created_at,
                    :source_type, :source_ref, :input_data,
                    :status, :progress, :attempts_made, :started_at, :completed_at,
                    :result, :error
                )
            """, job.to_dict())
            return cursor.rowcount > 0

    def mark_active(self, job_id: JobID, attempts_made: int, started_at: Optional[float] = None) -> bool:
        """
        Record that an attempt started.

        A repeated start for the same attempt, or any start after the job
        reached a terminal state, changes nothing.
        """
        started_at = started_at if started_at is not None else time.time()
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = 'active',
                    started_at = COALESCE(started_at, ?),
                    attempts_made = MAX(attempts_made, ?)
                WHERE job_id = ?
                  AND (status = 'queued' OR (status = 'active' AND attempts_made < ?))
            """, (started_at, attempts_made, job_id, attempts_made))
            return cursor.rowcount > 0

    def update_progress(self, job_id: JobID, progress: int) -> bool:
        """Raise progress of a non-terminal job; lower or equal values are ignored."""
        progress = max(0, min(100, int(progress)))
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = 'active', progress = ?
                WHERE job_id = ?
                  AND status IN ('queued', 'active')
                  AND progress < ?
            """, (progress, job_id, progress))
            return cursor.rowcount > 0

    def mark_completed(
        self,
        job_id: JobID,
        result: Optional[Dict[str, Any]],
        attempts_made: int,
        completed_at: Optional[float] = None
    ) -> bool:
        """Move a non-terminal job to completed. No-op on terminal records."""
        completed_at = completed_at if completed_at is not None else time.time()
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = 'completed',
                    progress = 100,
                    result = ?,
                    error = NULL,
                    attempts_made = MAX(attempts_made, ?),
                    started_at = COALESCE(started_at, ?),
                    completed_at = ?
                WHERE job_id = ? AND status IN ('queued', 'active')
            """, (
                json.dumps(result) if result is not None else None,
                attempts_made, completed_at, completed_at, job_id
            ))
            return cursor.rowcount > 0

    def mark_failed(
        self,
        job_id: JobID,
        error: str,
        attempts_made: int,
        completed_at: Optional[float] = None
    ) -> bool:
        """Move a non-terminal job to failed. No-op on terminal records."""
        completed_at = completed_at if completed_at is not None else time.time()
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE jobs
                SET status = 'failed',
                    error = ?,
                    attempts_made = MAX(attempts_made, ?),
                    completed_at = ?
                WHERE job_id = ? AND status IN ('queued', 'active')
            """, (error, attempts_made, completed_at, job_id))
            return cursor.rowcount > 0

    # Job queries

    def _select_jobs(self, where: str = "", params=(), order: str = "created_at DESC") -> List[UploadJob]:
        conn = self._get_connection()
        sql = "SELECT * FROM jobs"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order}"
        return [UploadJob.from_dict(dict(row)) for row in conn.execute(sql, params)]

    def get_job(self, job_id: JobID) -> Optional[UploadJob]:
        """The job record, or None when it was never recorded (or was cleaned up)."""
        jobs = self._select_jobs("job_id = ?", (job_id,))
        return jobs[0] if jobs else None

    def list_jobs_for_upload(self, upload_id: str) -> List[UploadJob]:
        """All jobs ever created for an upload, oldest first."""
        return self._select_jobs("upload_id = ?", (upload_id,), order="created_at ASC, rowid ASC")

    def get_all_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None
    ) -> List[UploadJob]:
        """
        Jobs newest first.

        Args:
            status: Only jobs in this status
            limit: Cap on the number of jobs returned
        """
        jobs = self._select_jobs("status = ?", (status.value,)) if status else self._select_jobs()
        return jobs if limit is None else jobs[:limit]

    def get_active_jobs(self) -> List[UploadJob]:
        """Jobs that are queued or being processed, oldest first."""
        return self._select_jobs("status IN ('queued', 'active')", order="created_at ASC")

    # Job logs

    def add_log(
        self,
        job_id: JobID,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Append one log line; ``metadata`` is stored as JSON."""
        payload = json.dumps(metadata, default=str) if metadata else None

        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO job_logs (job_id, timestamp, level, message, metadata) "
                "VALUES (?, ?, ?, ?, ?)",
                (job_id, time.time(), level, message, payload),
            )

    def get_logs(
        self,
        job_id: JobID,
        level: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Log lines for a job, newest first.

        Args:
            job_id: Job whose lines are wanted
            level: Only lines at exactly this level
            limit: Cap on the number of lines returned
        """
        conn = self._get_connection()

        conditions = ["job_id = ?"]
        params: List[Any] = [job_id]
        if level:
            conditions.append("level = ?")
            params.append(level)

        sql = (
            "SELECT * FROM job_logs WHERE " + " AND ".join(conditions)
            + " ORDER BY timestamp DESC, log_id DESC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        entries = []
        for row in conn.execute(sql, params):
            entry = dict(row)
            entry['metadata'] = json.loads(entry['metadata']) if entry['metadata'] else None
            entries.append(entry)
        return entries

    # Statistics

    def get_statistics(self) -> Dict[str, Any]:
        """Per-status job counts with average processing time and attempts."""
        conn = self._get_connection()
        return {
            row['status']: {
                'count': row['count'],
                'avg_processing_time': row['avg_processing_time'],
                'avg_attempts': row['avg_attempts'],
            }
            for row in conn.execute("SELECT * FROM job_statistics")
        }

    # Cleanup Operations

    def delete_old_logs(self, days: int = 30) -> int:
        """
        Delete log lines of terminal jobs written more than ``days`` ago.

        Job records themselves are kept for good: a retried upload keeps its
        whole job history. Logs of queued or active jobs are never touched.

        Returns:
            Number of log lines deleted
        """
        cutoff = time.time() - days * 86400

        with self._transaction() as conn:
            cursor = conn.execute("""
                DELETE FROM job_logs
                WHERE timestamp < ?
                  AND job_id IN (
                      SELECT job_id FROM jobs WHERE status IN ('completed', 'failed')
                  )
            """, (cutoff,))
            return cursor.rowcount
