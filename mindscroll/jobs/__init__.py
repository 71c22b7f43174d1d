"""
Background processing pipeline for MindScroll uploads.

Uploads are queued in a durable work queue and processed by a pool of
worker threads that extract the source text, call the card generator and
persist the generated cards. A reconciler mirrors queue lifecycle events
into the job store, which is what clients poll.

Key Components:
- JobManager: High-level API for submission, polling and lifecycle
- WorkQueue: SQLite priority queue with leases, retries and retention
- PipelineWorker: Worker pool that turns queue items into cards
- Reconciler: Mirrors queue events into the job store
- JobStorage: SQLite persistence of job records and logs
- JobLogger: Structured per-job logging

Example Usage:
    from mindscroll.jobs import JobManager

    manager = JobManager(generator=my_generator)
    manager.start()
    job_id = manager.submit_upload("user-1", "url", "https://example.com/post")

    job = manager.get_job_status(job_id)
    print(f"{job.status.value}: {job.progress}%")
"""

from .models import (
    BackoffPolicy,
    EventType,
    JobID,
    JobStatus,
    JobType,
    LeasedItem,
    QueueEvent,
    QueueItem,
    QueueState,
    UploadJob,
)

from .storage import JobStorage
from .queue import WorkQueue
from .logger import JobLogger
from .reconciler import Reconciler
from .worker import PipelineWorker, load_generator, run_worker
from .manager import JobManager

__all__ = [
    # Data models
    'BackoffPolicy',
    'EventType',
    'JobID',
    'JobStatus',
    'JobType',
    'LeasedItem',
    'QueueEvent',
    'QueueItem',
    'QueueState',
    'UploadJob',

    # Core components
    'JobStorage',
    'WorkQueue',
    'JobLogger',
    'Reconciler',
    'JobManager',

    # Worker
    'PipelineWorker',
    'load_generator',
    'run_worker',
]
