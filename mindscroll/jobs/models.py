"""
Data models for the content processing pipeline.

All models support JSON serialization/deserialization for storage in SQLite.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any


class JobStatus(str, Enum):
    """Upload job status as seen by clients polling the job store."""
    QUEUED = "queued"           # Waiting to be processed
    ACTIVE = "active"           # Currently being processed
    COMPLETED = "completed"     # Cards generated
    FAILED = "failed"           # Failed permanently or out of retries

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueState(str, Enum):
    """State of an item inside the work queue."""
    WAITING = "waiting"         # Eligible once available_at has passed
    ACTIVE = "active"           # Leased by a worker
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueState.COMPLETED, QueueState.FAILED)


class JobType(str, Enum):
    """Kinds of work the queue carries."""
    PROCESS_PDF_UPLOAD = "process-pdf-upload"
    PROCESS_EPUB_UPLOAD = "process-epub-upload"
    PROCESS_TXT_UPLOAD = "process-txt-upload"
    PROCESS_URL_UPLOAD = "process-url-upload"
    PROCESS_TEXT_UPLOAD = "process-text-upload"

    @classmethod
    def for_source(cls, source_type: str) -> 'JobType':
        return cls(f"process-{source_type}-upload")


class EventType(str, Enum):
    """Lifecycle events published by the work queue."""
    ENQUEUED = "enqueued"
    STARTED = "started"
    PROGRESSED = "progressed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BackoffPolicy:
    """
    Delay before a failed attempt is retried.

    exponential: delay * 2 ** (attempts_made - 1)
    fixed:       delay
    """
    type: str = "exponential"
    delay: float = 5.0

    def next_delay(self, attempts_made: int) -> float:
        """Seconds to wait after the given number of attempts."""
        if self.type == "fixed":
            return self.delay
        return self.delay * (2 ** max(0, attempts_made - 1))

    def to_json(self) -> str:
        return json.dumps({'type': self.type, 'delay': self.delay})

    @classmethod
    def from_json(cls, json_str: str) -> 'BackoffPolicy':
        data = json.loads(json_str)
        return cls(**data)


@dataclass
class QueueItem:
    """
    A unit of pending work in the queue.

    ``attempts_made`` counts leases handed out, so it includes the attempt
    that eventually succeeds.
    """
    job_id: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    delay: float = 0.0
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    state: QueueState = QueueState.WAITING
    seq: Optional[int] = None
    available_at: float = field(default_factory=time.time)
    lease_token: Optional[str] = None
    lease_expires_at: Optional[float] = None
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def upload_id(self) -> Optional[str]:
        return self.payload.get('upload_id')

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'seq': self.seq,
            'job_id': self.job_id,
            'job_type': self.job_type,
            'payload': json.dumps(self.payload),
            'priority': self.priority,
            'delay': self.delay,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'backoff': self.backoff.to_json(),
            'state': self.state.value,
            'available_at': self.available_at,
            'lease_token': self.lease_token,
            'lease_expires_at': self.lease_expires_at,
            'progress': self.progress,
            'result': json.dumps(self.result) if self.result is not None else None,
            'error': self.error,
            'created_at': self.created_at,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueItem':
        return cls(
            seq=data.get('seq'),
            job_id=data['job_id'],
            job_type=data['job_type'],
            payload=json.loads(data['payload']) if data.get('payload') else {},
            priority=data['priority'],
            delay=data['delay'],
            attempts_made=data['attempts_made'],
            max_attempts=data['max_attempts'],
            backoff=BackoffPolicy.from_json(data['backoff']) if data.get('backoff') else BackoffPolicy(),
            state=QueueState(data['state']),
            available_at=data['available_at'],
            lease_token=data.get('lease_token'),
            lease_expires_at=data.get('lease_expires_at'),
            progress=data.get('progress') or 0,
            result=json.loads(data['result']) if data.get('result') else None,
            error=data.get('error'),
            created_at=data['created_at'],
            started_at=data.get('started_at'),
            finished_at=data.get('finished_at'),
        )


@dataclass
class LeasedItem:
    """Handle a worker holds while processing a queue item."""
    item: QueueItem
    lease_token: str

    @property
    def job_id(self) -> str:
        return self.item.job_id

    @property
    def payload(self) -> Dict[str, Any]:
        return self.item.payload


@dataclass
class QueueEvent:
    """
    Lifecycle event published on the queue's event channel.

    Delivery is at-least-once; consumers must tolerate duplicates.
    """
    type: EventType
    job_id: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0
    progress: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def for_item(cls, event_type: EventType, item: QueueItem, **kwargs) -> 'QueueEvent':
        return cls(
            type=event_type,
            job_id=item.job_id,
            job_type=item.job_type,
            payload=item.payload,
            attempts_made=item.attempts_made,
            **kwargs
        )


@dataclass
class UploadJob:
    """
    Durable record of one upload's processing job.

    This is what clients poll. It is written only by the reconciler and is
    never deleted; a retry creates a new job for the same upload.
    """
    # Identity
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    upload_id: str = ""
    user_id: str = ""
    job_type: str = ""
    created_at: float = field(default_factory=time.time)

    # Input
    source_type: str = ""
    source_ref: str = ""
    input_data: Dict[str, Any] = field(default_factory=dict)

    # Status
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    attempts_made: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Outcome
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for database storage.

        JSON-serializable fields are converted to JSON strings.
        """
        return {
            'job_id': self.job_id,
            'upload_id': self.upload_id,
            'user_id': self.user_id,
            'job_type': self.job_type,
            'created_at': self.created_at,
            'source_type': self.source_type,
            'source_ref': self.source_ref,
            'input_data': json.dumps(self.input_data),
            'status': self.status.value,
            'progress': self.progress,
            'attempts_made': self.attempts_made,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'result': json.dumps(self.result) if self.result is not None else None,
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UploadJob':
        """
        Create from dictionary loaded from database.

        Deserializes JSON strings back to objects.
        """
        return cls(
            job_id=data['job_id'],
            upload_id=data['upload_id'],
            user_id=data['user_id'],
            job_type=data['job_type'],
            created_at=data['created_at'],
            source_type=data['source_type'],
            source_ref=data['source_ref'],
            input_data=json.loads(data['input_data']) if data.get('input_data') else {},
            status=JobStatus(data['status']),
            progress=data['progress'],
            attempts_made=data['attempts_made'],
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            result=json.loads(data['result']) if data.get('result') else None,
            error=data.get('error'),
        )

    @classmethod
    def from_event(cls, event: QueueEvent) -> 'UploadJob':
        """Initial record for a job first seen through a queue event."""
        payload = event.payload
        return cls(
            job_id=event.job_id,
            upload_id=payload.get('upload_id', ''),
            user_id=payload.get('user_id', ''),
            job_type=event.job_type,
            created_at=event.timestamp,
            source_type=payload.get('source_type', ''),
            source_ref=payload.get('source_ref', ''),
            input_data=payload,
        )

    def get_elapsed_time(self) -> Optional[float]:
        """Get elapsed processing time in seconds."""
        if self.started_at is None:
            return None

        if self.completed_at is not None:
            return self.completed_at - self.started_at
        else:
            return time.time() - self.started_at

    def format_status_message(self) -> str:
        """Format a user-friendly status message."""
        if self.status == JobStatus.QUEUED:
            return "Waiting in queue..."
        elif self.status == JobStatus.ACTIVE:
            return f"Processing... ({self.progress}%)"
        elif self.status == JobStatus.COMPLETED:
            cards = (self.result or {}).get('cards_generated')
            return f"Completed: {cards} cards generated" if cards is not None else "Completed successfully"
        elif self.status == JobStatus.FAILED:
            return f"Failed: {self.error}" if self.error else "Failed"
        else:
            return str(self.status.value)

    def can_be_retried(self) -> bool:
        """Failed jobs can be superseded by a fresh job for the same upload."""
        return self.status == JobStatus.FAILED


# Type aliases for clarity
JobID = str
