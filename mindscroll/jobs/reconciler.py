"""
Mirrors work queue lifecycle events into the job store.

The reconciler is the only writer of job records. Every write is best
effort: a failure is logged and dropped, and never reaches the queue or the
worker that produced the event. Writes are guarded in the job store, so
duplicate or late events leave the first terminal state in place.
"""

import logging
import queue
import threading
import time
from typing import Optional

from .models import EventType, QueueEvent, QueueItem, QueueState, UploadJob
from .queue import WorkQueue
from .storage import JobStorage

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Single consumer of a work queue's event channel.

    Example:
        reconciler = Reconciler(work_queue, job_storage)
        reconciler.start()
        ...
        reconciler.drain(timeout=5)
        reconciler.stop()
    """

    def __init__(self, work_queue: WorkQueue, storage: JobStorage, poll_interval: float = 0.5):
        """
        Args:
            work_queue: Queue whose events are mirrored
            storage: Job store to write to
            poll_interval: Seconds the consumer thread blocks per channel read
        """
        self.work_queue = work_queue
        self.storage = storage
        self.poll_interval = poll_interval

        self._channel: queue.Queue = work_queue.subscribe()
        self._thread: Optional[threading.Thread] = None
        self._running = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, resync: bool = True):
        """Start the consumer thread, replaying queue state first."""
        if self.is_running:
            return

        if resync:
            self.resync()

        self._running.set()
        self._thread = threading.Thread(target=self._run, name="mindscroll-reconciler", daemon=True)
        self._thread.start()
        logger.info("Reconciler started")

    def _run(self):
        while self._running.is_set():
            try:
                event = self._channel.get(timeout=self.poll_interval)
            except queue.Empty:
                continue

            try:
                self.handle(event)
            finally:
                self._channel.task_done()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every event published so far has been handled.

        Returns:
            True if the channel drained within the timeout
        """
        deadline = None if timeout is None else time.time() + timeout
        while self._channel.unfinished_tasks:
            if deadline is not None and time.time() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: Optional[float] = 5.0):
        """Stop the consumer thread; events still queued stay unhandled."""
        self._running.clear()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.work_queue.unsubscribe(self._channel)
        logger.info("Reconciler stopped")

    def handle(self, event: QueueEvent) -> bool:
        """
        Apply one event to the job store.

        Returns:
            True if the job record changed; False for no-ops and failures
        """
        try:
            return self._apply(event)
        except Exception:
            logger.error(
                "Failed to mirror %s event for job %s", event.type.value, event.job_id, exc_info=True
            )
            return False

    def _apply(self, event: QueueEvent) -> bool:
        # Records can be missing if the enqueued event was lost
        created = self.storage.record_enqueued(UploadJob.from_event(event))

        if event.type == EventType.ENQUEUED:
            return created
        elif event.type == EventType.STARTED:
            changed = self.storage.mark_active(event.job_id, event.attempts_made, event.timestamp)
        elif event.type == EventType.PROGRESSED:
            changed = self.storage.update_progress(event.job_id, event.progress or 0)
        elif event.type == EventType.COMPLETED:
            changed = self.storage.mark_completed(
                event.job_id, event.result, event.attempts_made, event.timestamp
            )
        elif event.type == EventType.FAILED:
            changed = self.storage.mark_failed(
                event.job_id, event.error or "Unknown error", event.attempts_made, event.timestamp
            )
        else:
            logger.warning("Ignoring unknown event type %s", event.type)
            return False

        if not changed:
            logger.debug("No-op %s event for job %s", event.type.value, event.job_id)
        return created or changed

    def resync(self) -> int:
        """
        Replay the queue's durable state into the job store.

        Recovers job records whose events were lost when the process died
        between a queue write and its mirroring.

        Returns:
            Number of job records changed
        """
        changed = 0
        try:
            items = self.work_queue.list_items()
        except Exception:
            logger.error("Could not read queue for resync", exc_info=True)
            return 0

        for item in items:
            for event in self._events_for(item):
                if self.handle(event):
                    changed += 1

        if changed:
            logger.info("Resync updated %d job records", changed)
        return changed

    @staticmethod
    def _events_for(item: QueueItem):
        """Events that bring a job record up to an item's current state."""
        timestamp = item.started_at or item.created_at
        events = [QueueEvent.for_item(EventType.ENQUEUED, item, timestamp=item.created_at)]

        if item.attempts_made > 0:
            events.append(QueueEvent.for_item(EventType.STARTED, item, timestamp=timestamp))
        if item.progress and item.state == QueueState.ACTIVE:
            events.append(QueueEvent.for_item(EventType.PROGRESSED, item, progress=item.progress))

        finished = item.finished_at or time.time()
        if item.state == QueueState.COMPLETED:
            events.append(QueueEvent.for_item(
                EventType.COMPLETED, item, progress=100, result=item.result, timestamp=finished
            ))
        elif item.state == QueueState.FAILED:
            events.append(QueueEvent.for_item(
                EventType.FAILED, item, error=item.error, timestamp=finished
            ))
        return events
