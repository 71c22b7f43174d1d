"""
Per-job log lines for the processing pipeline.

Log lines are persisted to the job store and mirrored to the standard
``logging`` module. Persisting is best effort: if the job store cannot be
written, the line still reaches the Python logger and processing goes on.
"""

import logging
import threading
import traceback
from typing import Optional, Dict, Any, List

from .models import JobID
from .storage import JobStorage

logger = logging.getLogger(__name__)


class JobLogger:
    """
    Per-job logger for pipeline stages.

    Features:
    - Lines land in the job_logs table, so clients can show them next to
      the job status
    - JSON metadata on every line
    - Mirrored to the ``mindscroll.job.<job_id>`` Python logger
    """

    # Log levels
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def __init__(self, job_id: JobID, storage: Optional[JobStorage]):
        """
        Args:
            job_id: Job whose lines are written
            storage: JobStorage instance for persistence (None to only mirror)
        """
        self.job_id = job_id
        self.storage = storage
        self._lock = threading.Lock()

        self._py_logger = logging.getLogger(f"mindscroll.job.{job_id}")

    def _log(
        self,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ):
        py_level = self._level_to_py_level(level)

        with self._lock:
            if self.storage is not None:
                try:
                    self.storage.add_log(
                        job_id=self.job_id,
                        level=level,
                        message=message,
                        metadata=metadata
                    )
                except Exception:
                    logger.warning("Could not persist log line for job %s", self.job_id, exc_info=True)

            if metadata:
                self._py_logger.log(py_level, "%s [%s]", message, metadata)
            else:
                self._py_logger.log(py_level, message)

    @staticmethod
    def _level_to_py_level(level: str) -> int:
        value = logging.getLevelName(level)
        return value if isinstance(value, int) else logging.INFO

    def debug(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.DEBUG, message, metadata)

    def info(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.INFO, message, metadata)

    def warning(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.WARNING, message, metadata)

    def error(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.ERROR, message, metadata)

    def critical(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.CRITICAL, message, metadata)

    def log_stage(self, stage: str, progress: int, metadata: Optional[Dict[str, Any]] = None):
        """Log a pipeline stage reaching a progress milestone."""
        self.info(
            f"{stage} ({progress}%)",
            metadata={"stage": stage, "progress": progress, **(metadata or {})}
        )

    def log_attempt_start(self, attempt: int, max_attempts: int):
        self.info(
            f"Starting attempt {attempt}/{max_attempts}",
            metadata={"attempt": attempt, "max_attempts": max_attempts}
        )

    def log_error_with_context(
        self,
        error: BaseException,
        context: str,
        retryable: Optional[bool] = None
    ):
        """
        Log a failed stage with its exception and traceback.

        Args:
            error: The exception raised by the stage
            context: What the worker was doing (e.g. "card generation")
            retryable: Whether the queue will retry the job, if decided
        """
        error_metadata = {
            "stage": context,
            "exception": type(error).__name__,
            "detail": str(error),
            "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        }

        if retryable is not None:
            error_metadata["retryable"] = retryable

        self.error(
            f"{context} failed: {type(error).__name__}: {error}",
            metadata=error_metadata
        )

    def get_recent_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent log entries for this job."""
        if self.storage is None:
            return []
        return self.storage.get_logs(self.job_id, limit=limit)

    def get_error_logs(self) -> List[Dict[str, Any]]:
        """ERROR and CRITICAL entries for this job, newest first."""
        if self.storage is None:
            return []
        return [
            entry for entry in self.storage.get_logs(self.job_id)
            if entry["level"] in (self.ERROR, self.CRITICAL)
        ]
