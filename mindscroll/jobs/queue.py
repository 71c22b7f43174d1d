"""
Durable work queue for background processing.

Items are ordered by priority (higher first) and then insertion order.
Workers lease one item at a time; a lease is identified by a token, and only
the current lease holder can complete, retry, fail or report progress on an
item. Lifecycle events are published to every subscribed channel.
"""

import json
import logging
import queue
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Optional, List, Dict, Any

from ..db import SQLiteStore
from .models import (
    BackoffPolicy,
    EventType,
    LeasedItem,
    QueueEvent,
    QueueItem,
    QueueState,
    JobID,
)

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Cancelled"


class WorkQueue(SQLiteStore):
    """
    SQLite-backed priority queue with leases, retries and retention.

    Example:
        work_queue = WorkQueue("queue.db")
        events = work_queue.subscribe()

        job_id = work_queue.enqueue("process-text-upload", {"upload_id": "u1"})
        leased = work_queue.dequeue(timeout=1.0)
        work_queue.report_progress(leased, 50)
        work_queue.ack(leased, {"cards_generated": 12})
    """

    schema_file = "queue_schema.sql"
    schema_dir = Path(__file__).parent
    default_db_name = "queue.db"

    def __init__(
        self,
        db_path: Optional[str] = None,
        lease_timeout: float = 600.0,
        default_max_attempts: int = 3,
        default_backoff: Optional[BackoffPolicy] = None,
        keep_completed: int = 10,
        keep_failed: int = 50,
        completed_retention: float = 24 * 60 * 60,
        failed_retention: float = 7 * 24 * 60 * 60,
        poll_interval: float = 1.0
    ):
        """
        Initialize queue.

        Args:
            db_path: Path to the queue database (None for default)
            lease_timeout: Seconds a lease stays valid without progress
            default_max_attempts: Attempts for items enqueued without one
            default_backoff: Retry delay policy for items enqueued without one
            keep_completed: Most recent completed items kept by prune()
            keep_failed: Most recent failed items kept by prune()
            completed_retention: Max age of completed items in seconds
            failed_retention: Max age of failed items in seconds
            poll_interval: Longest a blocking dequeue sleeps between checks
        """
        super().__init__(db_path)

        self.lease_timeout = lease_timeout
        self.default_max_attempts = default_max_attempts
        self.default_backoff = default_backoff or BackoffPolicy()
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self.poll_interval = poll_interval

        self._condition = threading.Condition()
        self._version = 0

        self._subscribers: List[queue.Queue] = []
        self._subscribers_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, db_path: Optional[str] = None) -> 'WorkQueue':
        """Create a queue from a PipelineConfig."""
        return cls(
            db_path or config.queue_db_path,
            lease_timeout=config.lease_timeout,
            default_max_attempts=config.max_attempts,
            default_backoff=BackoffPolicy(config.backoff_type, config.backoff_delay),
            keep_completed=config.keep_completed,
            keep_failed=config.keep_failed,
            completed_retention=config.completed_retention,
            failed_retention=config.failed_retention,
            poll_interval=config.poll_interval,
        )

    # Event channel

    def subscribe(self) -> queue.Queue:
        """
        Open a new event channel.

        Every lifecycle event emitted after this call is put on the returned
        queue, in emission order.
        """
        channel = queue.Queue()
        with self._subscribers_lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: queue.Queue):
        with self._subscribers_lock:
            if channel in self._subscribers:
                self._subscribers.remove(channel)

    def _publish(self, event: QueueEvent):
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for channel in subscribers:
            channel.put(event)

    def _notify(self):
        """Wake up blocked dequeue() calls."""
        with self._condition:
            self._version += 1
            self._condition.notify_all()

    # Producer side

    def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 0,
        delay: float = 0.0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        job_id: Optional[JobID] = None
    ) -> JobID:
        """
        Add a work item.

        Args:
            job_type: Job type tag (e.g. 'process-pdf-upload')
            payload: JSON-serializable input for the worker
            priority: Higher values are dequeued first
            delay: Seconds before the item becomes eligible
            max_attempts: Attempts before terminal failure
            backoff: Retry delay policy
            job_id: Explicit job id (generated if None)

        Returns:
            Job ID of the queued item

        Raises:
            ValueError: If the options are invalid or the job id exists
        """
        max_attempts = max_attempts if max_attempts is not None else self.default_max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if delay < 0:
            raise ValueError("delay cannot be negative")

        now = time.time()
        item = QueueItem(
            job_id=job_id or str(uuid.uuid4()),
            job_type=job_type,
            payload=payload or {},
            priority=priority,
            delay=delay,
            max_attempts=max_attempts,
            backoff=backoff or self.default_backoff,
            available_at=now + delay,
            created_at=now,
        )

        with self._lock:
            try:
                with self._transaction() as conn:
                    cursor = conn.execute("""
                        INSERT INTO queue_items (
                            job_id, job_type, payload, priority, delay,
                            attempts_made, max_attempts, backoff, state,
                            available_at, progress, created_at
                        ) VALUES (
                            :job_id, :job_type, :payload, :priority, :delay,
                            :attempts_made, :max_attempts, :backoff, :state,
                            :available_at, :progress, :created_at
                        )
                    """, item.to_dict())
                    item.seq = cursor.lastrowid
            except sqlite3.IntegrityError:
                raise ValueError(f"Job already queued: {item.job_id}")

            self._publish(QueueEvent.for_item(EventType.ENQUEUED, item))

        logger.debug("Enqueued %s job %s (priority=%d, delay=%.1fs)", job_type, item.job_id, priority, delay)
        self._notify()
        return item.job_id

    # Consumer side

    def dequeue(self, timeout: float = 0.0, now: Optional[float] = None) -> Optional[LeasedItem]:
        """
        Lease the next eligible item.

        Args:
            timeout: Seconds to wait for an item (0 returns immediately)
            now: Clock override for eligibility checks

        Returns:
            LeasedItem, or None if nothing became eligible in time
        """
        deadline = time.time() + timeout

        while True:
            with self._condition:
                seen = self._version

            leased = self._lease(now)
            if leased is not None:
                return leased

            remaining = deadline - time.time()
            if remaining <= 0:
                return None

            wait = min(remaining, self.poll_interval)
            next_at = self._next_available_at()
            if next_at is not None:
                wait = min(wait, max(0.0, next_at - time.time()))

            with self._condition:
                if self._version == seen:
                    self._condition.wait(wait)

    def _lease(self, now: Optional[float] = None) -> Optional[LeasedItem]:
        now = now if now is not None else time.time()
        token = uuid.uuid4().hex

        with self._lock:
            with self._immediate_transaction() as conn:
                row = conn.execute("""
                    SELECT seq FROM queue_items
                    WHERE state = 'waiting' AND available_at <= ?
                    ORDER BY priority DESC, seq ASC
                    LIMIT 1
                """, (now,)).fetchone()

                if row is None:
                    return None

                conn.execute("""
                    UPDATE queue_items
                    SET state = 'active',
                        lease_token = ?,
                        lease_expires_at = ?,
                        attempts_made = attempts_made + 1,
                        started_at = COALESCE(started_at, ?)
                    WHERE seq = ?
                """, (token, now + self.lease_timeout, now, row['seq']))

                item = self._load(conn, seq=row['seq'])

            self._publish(QueueEvent.for_item(EventType.STARTED, item))

        logger.debug("Leased job %s (attempt %d/%d)", item.job_id, item.attempts_made, item.max_attempts)
        return LeasedItem(item=item, lease_token=token)

    def _next_available_at(self) -> Optional[float]:
        conn = self._get_connection()
        row = conn.execute("""
            SELECT MIN(available_at) AS next_at FROM queue_items WHERE state = 'waiting'
        """).fetchone()
        return row['next_at'] if row else None

    @staticmethod
    def _load(conn, seq: Optional[int] = None, job_id: Optional[JobID] = None) -> Optional[QueueItem]:
        if seq is not None:
            row = conn.execute("SELECT * FROM queue_items WHERE seq = ?", (seq,)).fetchone()
        else:
            row = conn.execute("SELECT * FROM queue_items WHERE job_id = ?", (job_id,)).fetchone()
        return QueueItem.from_dict(dict(row)) if row else None

    def _load_leased(self, conn, handle: LeasedItem) -> Optional[QueueItem]:
        row = conn.execute("""
            SELECT * FROM queue_items
            WHERE job_id = ? AND state = 'active' AND lease_token = ?
        """, (handle.job_id, handle.lease_token)).fetchone()
        return QueueItem.from_dict(dict(row)) if row else None

    def ack(self, handle: LeasedItem, result: Optional[Dict[str, Any]] = None) -> bool:
        """
        Mark a leased item completed.

        Returns:
            False if the lease was lost (expired, cancelled or already finished)
        """
        now = time.time()
        with self._lock:
            with self._immediate_transaction() as conn:
                item = self._load_leased(conn, handle)
                if item is None:
                    logger.warning("Ignoring ack for job %s: lease no longer held", handle.job_id)
                    return False

                conn.execute("""
                    UPDATE queue_items
                    SET state = 'completed', progress = 100, result = ?, error = NULL,
                        lease_token = NULL, lease_expires_at = NULL, finished_at = ?
                    WHERE seq = ?
                """, (json.dumps(result) if result is not None else None, now, item.seq))

            self._publish(QueueEvent.for_item(EventType.COMPLETED, item, progress=100, result=result))

        return True

    def nack(self, handle: LeasedItem, error: str) -> bool:
        """
        Report a retryable failure of a leased item.

        The item returns to the queue after its backoff delay, or fails
        terminally once its attempts are exhausted.

        Returns:
            False if the lease was lost
        """
        now = time.time()
        with self._lock:
            with self._immediate_transaction() as conn:
                item = self._load_leased(conn, handle)
                if item is None:
                    logger.warning("Ignoring nack for job %s: lease no longer held", handle.job_id)
                    return False

                if item.attempts_made >= item.max_attempts:
                    self._mark_failed(conn, item, error, now)
                    exhausted = True
                else:
                    retry_delay = item.backoff.next_delay(item.attempts_made)
                    conn.execute("""
                        UPDATE queue_items
                        SET state = 'waiting', available_at = ?, error = ?,
                            lease_token = NULL, lease_expires_at = NULL
                        WHERE seq = ?
                    """, (now + retry_delay, error, item.seq))
                    exhausted = False

            if exhausted:
                self._publish(QueueEvent.for_item(EventType.FAILED, item, error=error))

        if exhausted:
            logger.warning(
                "Job %s failed after %d attempts: %s", item.job_id, item.attempts_made, error
            )
        else:
            logger.info(
                "Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                item.job_id, item.attempts_made, item.max_attempts, retry_delay, error
            )
            self._notify()
        return True

    def fail(self, handle: LeasedItem, error: str) -> bool:
        """
        Fail a leased item terminally without further attempts.

        Returns:
            False if the lease was lost
        """
        now = time.time()
        with self._lock:
            with self._immediate_transaction() as conn:
                item = self._load_leased(conn, handle)
                if item is None:
                    logger.warning("Ignoring fail for job %s: lease no longer held", handle.job_id)
                    return False
                self._mark_failed(conn, item, error, now)

            self._publish(QueueEvent.for_item(EventType.FAILED, item, error=error))

        logger.warning("Job %s failed permanently: %s", item.job_id, error)
        return True

    @staticmethod
    def _mark_failed(conn, item: QueueItem, error: str, now: float):
        conn.execute("""
            UPDATE queue_items
            SET state = 'failed', error = ?, lease_token = NULL,
                lease_expires_at = NULL, finished_at = ?
            WHERE seq = ?
        """, (error, now, item.seq))

    def report_progress(self, handle: LeasedItem, progress: int) -> bool:
        """
        Publish a progress percentage for a leased item and renew its lease.

        Returns:
            False if the lease was lost
        """
        progress = max(0, min(100, int(progress)))
        now = time.time()
        with self._lock:
            with self._transaction() as conn:
                cursor = conn.execute("""
                    UPDATE queue_items
                    SET progress = ?, lease_expires_at = ?
                    WHERE job_id = ? AND state = 'active' AND lease_token = ?
                """, (progress, now + self.lease_timeout, handle.job_id, handle.lease_token))
                if cursor.rowcount == 0:
                    return False

            self._publish(QueueEvent.for_item(EventType.PROGRESSED, handle.item, progress=progress))

        return True

    def holds_lease(self, handle: LeasedItem) -> bool:
        """Whether the handle still owns its item."""
        conn = self._get_connection()
        return self._load_leased(conn, handle) is not None

    # Control

    def cancel(self, job_id: JobID) -> bool:
        """
        Cancel a waiting or active item.

        The item fails terminally; a worker processing it loses its lease.

        Returns:
            True if the item was cancelled
        """
        now = time.time()
        with self._lock:
            with self._immediate_transaction() as conn:
                item = self._load(conn, job_id=job_id)
                if item is None or item.state.is_terminal:
                    return False
                self._mark_failed(conn, item, CANCELLED_ERROR, now)

            self._publish(QueueEvent.for_item(EventType.FAILED, item, error=CANCELLED_ERROR))

        logger.info("Cancelled job %s", job_id)
        return True

    def is_cancelled(self, job_id: JobID) -> bool:
        item = self.get_item(job_id)
        return item is not None and item.state == QueueState.FAILED and item.error == CANCELLED_ERROR

    def recover_stale_leases(self, now: Optional[float] = None) -> int:
        """
        Return items whose lease expired (crashed worker) to the queue.

        Items without attempts left fail terminally.

        Returns:
            Number of leases recovered
        """
        now = now if now is not None else time.time()
        failed = []

        with self._lock:
            with self._immediate_transaction() as conn:
                rows = conn.execute("""
                    SELECT * FROM queue_items
                    WHERE state = 'active' AND lease_expires_at < ?
                    ORDER BY seq
                """, (now,)).fetchall()

                for row in rows:
                    item = QueueItem.from_dict(dict(row))
                    if item.attempts_made >= item.max_attempts:
                        error = f"Lease expired after {item.attempts_made} attempts"
                        self._mark_failed(conn, item, error, now)
                        failed.append((item, error))
                    else:
                        conn.execute("""
                            UPDATE queue_items
                            SET state = 'waiting', available_at = ?, error = ?,
                                lease_token = NULL, lease_expires_at = NULL
                            WHERE seq = ?
                        """, (now, "Lease expired", item.seq))

            for item, error in failed:
                self._publish(QueueEvent.for_item(EventType.FAILED, item, error=error))

        if rows:
            logger.warning("Recovered %d stale leases (%d failed)", len(rows), len(failed))
            self._notify()
        return len(rows)

    def prune(self, now: Optional[float] = None) -> int:
        """
        Delete finished items beyond the retention limits.

        Failures are logged, not raised.

        Returns:
            Number of items deleted
        """
        now = now if now is not None else time.time()
        limits = (
            ('completed', self.completed_retention, self.keep_completed),
            ('failed', self.failed_retention, self.keep_failed),
        )

        deleted = 0
        try:
            with self._lock:
                with self._transaction() as conn:
                    for state, retention, keep in limits:
                        cursor = conn.execute("""
                            DELETE FROM queue_items
                            WHERE state = ?
                              AND (finished_at < ? OR seq NOT IN (
                                  SELECT seq FROM queue_items
                                  WHERE state = ?
                                  ORDER BY finished_at DESC, seq DESC
                                  LIMIT ?
                              ))
                        """, (state, now - retention, state, keep))
                        deleted += cursor.rowcount
        except sqlite3.Error as e:
            logger.error("Queue prune failed: %s", e, exc_info=True)
            return 0

        if deleted:
            logger.info("Pruned %d finished queue items", deleted)
        return deleted

    # Diagnostics

    def get_item(self, job_id: JobID) -> Optional[QueueItem]:
        conn = self._get_connection()
        return self._load(conn, job_id=job_id)

    def list_items(self, state: Optional[QueueState] = None, limit: Optional[int] = None) -> List[QueueItem]:
        """Items in queue order, optionally filtered by state."""
        conn = self._get_connection()

        query = "SELECT * FROM queue_items"
        params = []

        if state is not None:
            query += " WHERE state = ?"
            params.append(state.value)

        query += " ORDER BY seq ASC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return [QueueItem.from_dict(dict(row)) for row in conn.execute(query, params).fetchall()]

    def counts(self) -> Dict[str, int]:
        """Number of items per state."""
        conn = self._get_connection()
        counts = {state.value: 0 for state in QueueState}
        for row in conn.execute("SELECT state, COUNT(*) AS count FROM queue_items GROUP BY state"):
            counts[row['state']] = row['count']
        return counts

    def has_pending(self) -> bool:
        """
        True while any item is waiting or active.

        Taken under the write lock, so a False answer also means the events
        of every finished item have been published.
        """
        with self._lock:
            counts = self.counts()
        return counts[QueueState.WAITING.value] + counts[QueueState.ACTIVE.value] > 0
