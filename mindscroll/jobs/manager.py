"""
High-level job management API.

Wires the work queue, job store, reconciler and worker pool together and
exposes the lifecycle (start, drain, shutdown) the host process calls.
"""

import logging
import uuid
from pathlib import Path
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

from ..config import PipelineConfig
from ..core import CardGenerator, SourceType
from ..learning.storage import LearningStorage
from .logger import JobLogger
from .models import JobID, JobStatus, JobType, UploadJob
from .queue import WorkQueue
from .reconciler import Reconciler
from .storage import JobStorage
from .worker import PipelineWorker

logger = logging.getLogger(__name__)


class JobManager:
    """
    High-level API for upload processing jobs.

    This is the interface the host process (API server, CLI) uses. Without a
    generator it only submits and tracks jobs; with one it also runs a
    worker pool.

    Example:
        manager = JobManager(PipelineConfig(data_dir="/tmp/ms"), generator=my_generator)
        manager.start()

        job_id = manager.submit_upload("user-1", "pdf", "book.pdf")
        job = manager.get_job_status(job_id)
        print(job.format_status_message())

        manager.shutdown()
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        generator: Optional[CardGenerator] = None,
        job_storage: Optional[JobStorage] = None,
        work_queue: Optional[WorkQueue] = None,
        learning_storage: Optional[LearningStorage] = None
    ):
        """
        Initialize job manager.

        Args:
            config: Pipeline configuration (from environment if None)
            generator: Card generator; enables the worker pool when given
            job_storage: Existing job store (created from config if None)
            work_queue: Existing work queue (created from config if None)
            learning_storage: Existing learning store (created from config if None)
        """
        self.config = config or PipelineConfig.from_env()
        self.storage = job_storage or JobStorage(self.config.jobs_db_path)
        self.queue = work_queue or WorkQueue.from_config(self.config)
        self.learning_storage = learning_storage or LearningStorage(self.config.learning_db_path)

        self.reconciler = Reconciler(self.queue, self.storage)
        self.worker: Optional[PipelineWorker] = None
        if generator is not None:
            self.worker = PipelineWorker(
                self.queue,
                self.learning_storage,
                generator,
                job_storage=self.storage,
                config=self.config,
            )

    # Lifecycle

    def start(self):
        """Start the reconciler and, if configured, the worker pool."""
        self.reconciler.start()
        if self.worker is not None:
            self.worker.start()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued work to finish and its events to be mirrored.

        Returns:
            True if everything settled within the timeout
        """
        drained = True
        if self.worker is not None:
            drained = self.worker.drain(timeout)
        return self.reconciler.drain(timeout) and drained

    def shutdown(self, timeout: Optional[float] = 10.0):
        """Stop workers, flush pending events to the job store and stop."""
        if self.worker is not None:
            self.worker.stop(timeout)
        self.reconciler.drain(timeout)
        self.reconciler.stop()

    # Submission

    def submit_upload(
        self,
        user_id: str,
        source_type: str,
        source_ref: str,
        upload_id: Optional[str] = None,
        title: Optional[str] = None,
        priority: int = 0,
        delay: float = 0.0,
        generation_config: Optional[Dict[str, Any]] = None
    ) -> JobID:
        """
        Submit an upload for card generation.

        Args:
            user_id: Owner of the upload
            source_type: 'pdf', 'epub', 'txt', 'url' or 'text'
            source_ref: File path, URL or the text itself
            upload_id: Upload identity (generated if None)
            title: Title override for the generated content
            priority: Higher values are processed first
            delay: Seconds before processing may start
            generation_config: Options passed through to the generator

        Returns:
            Job ID for tracking

        Raises:
            FileNotFoundError: If a file source doesn't exist
            ValueError: If the source type or URL is invalid
        """
        try:
            kind = SourceType(source_type)
        except ValueError:
            raise ValueError(f"Unsupported source type: {source_type}")

        if kind.is_file:
            path = Path(source_ref).resolve()
            if not path.exists():
                raise FileNotFoundError(f"Input file not found: {source_ref}")
            source_ref = str(path)
        elif kind == SourceType.URL:
            parsed = urlparse(source_ref)
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                raise ValueError(f"Invalid URL: {source_ref}")

        payload = {
            'upload_id': upload_id or str(uuid.uuid4()),
            'user_id': user_id,
            'source_type': kind.value,
            'source_ref': source_ref,
        }
        if title:
            payload['title'] = title
        if generation_config:
            payload['generation_config'] = generation_config

        return self._enqueue(payload, priority=priority, delay=delay)

    def _enqueue(self, payload: Dict[str, Any], priority: int = 0, delay: float = 0.0) -> JobID:
        job_type = JobType.for_source(payload['source_type'])
        job_id = self.queue.enqueue(job_type.value, payload, priority=priority, delay=delay)

        job_logger = JobLogger(job_id, self.storage)
        job_logger.info(
            f"Upload submitted: {payload['source_type']} source for upload {payload['upload_id']}",
            metadata={
                'upload_id': payload['upload_id'],
                'user_id': payload['user_id'],
                'source_type': payload['source_type'],
                'priority': priority,
            }
        )
        return job_id

    # Queries

    def get_job_status(self, job_id: JobID) -> Optional[UploadJob]:
        """Current job record, None if unknown."""
        return self.storage.get_job(job_id)

    def list_jobs_for_upload(self, upload_id: str) -> List[UploadJob]:
        """Every job of an upload, oldest first."""
        return self.storage.list_jobs_for_upload(upload_id)

    def get_all_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None
    ) -> List[UploadJob]:
        return self.storage.get_all_jobs(status=status, limit=limit)

    def get_job_logs(
        self,
        job_id: JobID,
        level: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Get log entries for a job.

        Args:
            job_id: Job ID
            level: Filter by log level (None for all)
            limit: Maximum number of entries

        Returns:
            List of log entry dictionaries
        """
        return self.storage.get_logs(job_id, level=level, limit=limit)

    def get_statistics(self) -> Dict[str, Any]:
        """Job counts per status and queue item counts per state."""
        return {
            'jobs': self.storage.get_statistics(),
            'queue': self.queue.counts(),
        }

    # Control

    def cancel_job(self, job_id: JobID) -> bool:
        """
        Cancel a queued or running job.

        Returns:
            True if cancelled, False if the job is unknown or already finished
        """
        cancelled = self.queue.cancel(job_id)
        if cancelled:
            JobLogger(job_id, self.storage).warning("Job cancelled by user")
        return cancelled

    def retry_job(self, job_id: JobID, priority: int = 0) -> Optional[JobID]:
        """
        Supersede a failed job with a new job for the same upload.

        The failed record is kept; the new job gets its own id and attempts.

        Returns:
            New job ID, or None if the job is unknown or not failed
        """
        job = self.storage.get_job(job_id)
        if job is None or not job.can_be_retried():
            return None

        payload = dict(job.input_data) or {
            'upload_id': job.upload_id,
            'user_id': job.user_id,
            'source_type': job.source_type,
            'source_ref': job.source_ref,
        }
        new_job_id = self._enqueue(payload, priority=priority)

        JobLogger(job_id, self.storage).info(
            f"Superseded by job {new_job_id}", metadata={'new_job_id': new_job_id}
        )
        return new_job_id

    def cleanup(self) -> int:
        """
        Recover stale leases and prune finished queue items.

        Returns:
            Number of queue items deleted
        """
        self.queue.recover_stale_leases()
        return self.queue.prune()

    def cleanup_old_logs(self, days: int = 30) -> int:
        """Delete log lines of finished jobs older than ``days``; job records stay."""
        return self.storage.delete_old_logs(days=days)

    def close(self):
        """Close database connections."""
        self.storage.close()
        self.queue.close()
        self.learning_storage.close()
