"""Pipeline configuration for MindScroll.

This module provides configuration options for the background processing
pipeline: worker concurrency, retry policy, timeouts and queue retention.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


BACKOFF_TYPES = ('exponential', 'fixed')


@dataclass
class PipelineConfig:
    """Configuration for the content processing pipeline.

    Attributes:
        data_dir: Directory holding the SQLite databases (default: ~/.mindscroll)
        concurrency: Number of worker slots consuming the queue (default: 2)
        poll_interval: Seconds a worker waits for new work before re-polling (default: 1.0)
        max_attempts: Attempts per queue item before terminal failure (default: 3)
        backoff_type: 'exponential' or 'fixed' retry delay (default: 'exponential')
        backoff_delay: Base retry delay in seconds (default: 5.0)
        lease_timeout: Seconds before an active lease is considered abandoned (default: 600)
        generation_timeout: Seconds allowed for one card generation call (default: 300)
        keep_completed: Most recent completed queue items kept (default: 10)
        keep_failed: Most recent failed queue items kept (default: 50)
        completed_retention: Max age in seconds of completed queue items (default: 24h)
        failed_retention: Max age in seconds of failed queue items (default: 7 days)
        prune_interval: Seconds between maintenance passes (default: 300)
        url_timeout: Seconds allowed for fetching a URL source (default: 10)
    """
    data_dir: Optional[str] = None
    concurrency: int = 2
    poll_interval: float = 1.0
    max_attempts: int = 3
    backoff_type: str = 'exponential'
    backoff_delay: float = 5.0
    lease_timeout: float = 600.0
    generation_timeout: float = 300.0
    keep_completed: int = 10
    keep_failed: int = 50
    completed_retention: float = 24 * 60 * 60
    failed_retention: float = 7 * 24 * 60 * 60
    prune_interval: float = 300.0
    url_timeout: float = 10.0

    def __post_init__(self):
        """Initialize default values and validate after dataclass init."""
        if self.data_dir is None:
            self.data_dir = str(Path.home() / ".mindscroll")

        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff_type not in BACKOFF_TYPES:
            raise ValueError(f"Unsupported backoff type: {self.backoff_type}")
        if self.backoff_delay < 0:
            raise ValueError("backoff_delay cannot be negative")

    def db_path(self, name: str) -> str:
        """Path of a database file inside the data directory (created on demand)."""
        data_dir = Path(self.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        return str(data_dir / name)

    @property
    def jobs_db_path(self) -> str:
        return self.db_path("jobs.db")

    @property
    def queue_db_path(self) -> str:
        return self.db_path("queue.db")

    @property
    def learning_db_path(self) -> str:
        return self.db_path("learning.db")

    @classmethod
    def from_env(cls):
        """Load configuration from environment variables.

        Environment variables:
            MINDSCROLL_DATA_DIR: Database directory
            MINDSCROLL_CONCURRENCY: Worker slots (integer)
            MINDSCROLL_POLL_INTERVAL: Queue poll interval in seconds (float)
            MINDSCROLL_MAX_ATTEMPTS: Attempts per job (integer)
            MINDSCROLL_BACKOFF_TYPE: 'exponential' or 'fixed'
            MINDSCROLL_BACKOFF_DELAY: Base retry delay in seconds (float)
            MINDSCROLL_LEASE_TIMEOUT: Lease timeout in seconds (float)
            MINDSCROLL_GENERATION_TIMEOUT: Generation timeout in seconds (float)
            MINDSCROLL_KEEP_COMPLETED: Completed items kept (integer)
            MINDSCROLL_KEEP_FAILED: Failed items kept (integer)
            MINDSCROLL_COMPLETED_RETENTION: Completed item max age in seconds (float)
            MINDSCROLL_FAILED_RETENTION: Failed item max age in seconds (float)
            MINDSCROLL_PRUNE_INTERVAL: Seconds between maintenance passes (float)
            MINDSCROLL_URL_TIMEOUT: URL fetch timeout in seconds (float)

        Returns:
            PipelineConfig instance with values from environment
        """
        return cls(
            data_dir=os.getenv('MINDSCROLL_DATA_DIR') or None,
            concurrency=int(os.getenv('MINDSCROLL_CONCURRENCY', '2')),
            poll_interval=float(os.getenv('MINDSCROLL_POLL_INTERVAL', '1.0')),
            max_attempts=int(os.getenv('MINDSCROLL_MAX_ATTEMPTS', '3')),
            backoff_type=os.getenv('MINDSCROLL_BACKOFF_TYPE', 'exponential').lower(),
            backoff_delay=float(os.getenv('MINDSCROLL_BACKOFF_DELAY', '5.0')),
            lease_timeout=float(os.getenv('MINDSCROLL_LEASE_TIMEOUT', '600')),
            generation_timeout=float(os.getenv('MINDSCROLL_GENERATION_TIMEOUT', '300')),
            keep_completed=int(os.getenv('MINDSCROLL_KEEP_COMPLETED', '10')),
            keep_failed=int(os.getenv('MINDSCROLL_KEEP_FAILED', '50')),
            completed_retention=float(os.getenv('MINDSCROLL_COMPLETED_RETENTION', str(24 * 60 * 60))),
            failed_retention=float(os.getenv('MINDSCROLL_FAILED_RETENTION', str(7 * 24 * 60 * 60))),
            prune_interval=float(os.getenv('MINDSCROLL_PRUNE_INTERVAL', '300')),
            url_timeout=float(os.getenv('MINDSCROLL_URL_TIMEOUT', '10')),
        )
