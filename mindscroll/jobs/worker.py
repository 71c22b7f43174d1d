"""
Background worker pool that turns queued uploads into cards.

Each worker slot leases one queue item at a time, extracts the source text,
calls the card generator, persists the resulting cards and acknowledges the
item. Failures are classified and handed back to the queue: transient ones
are nacked (and retried with backoff), permanent ones are failed right away.
"""

import importlib
import logging
import signal
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Optional, Dict, Any, List

from ..config import PipelineConfig
from ..core import (
    CardGenerator,
    CardSet,
    SourceDocument,
    SourceExtractor,
    TransientGenerationError,
    is_retryable,
)
from ..learning.storage import LearningStorage
from .logger import JobLogger
from .models import LeasedItem
from .queue import WorkQueue
from .storage import JobStorage

logger = logging.getLogger(__name__)

# Progress milestones
PROGRESS_EXTRACTED = 25
PROGRESS_GENERATED = 75
PROGRESS_SAVED = 90


class LeaseLost(Exception):
    """The item was cancelled or redelivered while this worker held it."""


class PipelineWorker:
    """
    Fixed-size pool of worker threads consuming a WorkQueue.

    Features:
    - Configurable concurrency (one leased item per slot)
    - Generation timeout, reported as a transient failure
    - Idempotent redelivery: an upload that already has cards is acked
      with the existing content instead of being regenerated
    - Maintenance thread for stale lease recovery and queue pruning
    """

    def __init__(
        self,
        work_queue: WorkQueue,
        learning_storage: LearningStorage,
        generator: CardGenerator,
        job_storage: Optional[JobStorage] = None,
        config: Optional[PipelineConfig] = None,
        extractor: Optional[SourceExtractor] = None
    ):
        """
        Initialize worker pool.

        Args:
            work_queue: Queue to consume
            learning_storage: Where generated cards are persisted
            generator: External card generation capability
            job_storage: Job store for per-job log lines (None to skip)
            config: Pipeline configuration (defaults if None)
            extractor: Source text extractor (created from config if None)
        """
        self.work_queue = work_queue
        self.learning_storage = learning_storage
        self.generator = generator
        self.job_storage = job_storage
        self.config = config or PipelineConfig()
        self.extractor = extractor or SourceExtractor(url_timeout=self.config.url_timeout)

        self._running = threading.Event()
        self._threads: List[threading.Thread] = []
        self._maintenance_thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    # Lifecycle

    def start(self):
        """Recover abandoned leases and start the worker and maintenance threads."""
        if self.is_running:
            return

        self.work_queue.recover_stale_leases()

        self._running.set()

        for slot in range(self.config.concurrency):
            thread = threading.Thread(
                target=self._run_slot,
                args=(slot,),
                name=f"mindscroll-worker-{slot}",
                daemon=True
            )
            thread.start()
            self._threads.append(thread)

        self._maintenance_thread = threading.Thread(
            target=self._run_maintenance,
            name="mindscroll-maintenance",
            daemon=True
        )
        self._maintenance_thread.start()

        logger.info("Worker pool started with %d slots", self.config.concurrency)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the queue has no waiting or active items.

        Returns:
            True if the queue drained within the timeout
        """
        deadline = None if timeout is None else time.time() + timeout
        while self.work_queue.has_pending():
            if deadline is not None and time.time() >= deadline:
                return False
            time.sleep(0.05)
        return True

    def stop(self, timeout: Optional[float] = 10.0):
        """Stop taking new work and wait for in-flight items to finish."""
        self._running.clear()

        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

        if self._maintenance_thread is not None:
            self._maintenance_thread.join(timeout)
            self._maintenance_thread = None

        logger.info("Worker pool stopped")

    def _run_slot(self, slot: int):
        while self._running.is_set():
            try:
                leased = self.work_queue.dequeue(timeout=self.config.poll_interval)
            except Exception:
                logger.error("Worker %d could not read the queue", slot, exc_info=True)
                time.sleep(self.config.poll_interval)
                continue

            if leased is not None:
                self.process(leased)

    def _run_maintenance(self):
        while self._wait_stopped(self.config.prune_interval):
            self.run_maintenance()

    def _wait_stopped(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; False once the pool is stopping."""
        deadline = time.time() + seconds
        while self._running.is_set():
            remaining = deadline - time.time()
            if remaining <= 0:
                return True
            time.sleep(min(remaining, 0.2))
        return False

    def run_maintenance(self):
        """One maintenance pass; errors are logged, not raised."""
        try:
            self.work_queue.recover_stale_leases()
            self.work_queue.prune()
        except Exception:
            logger.error("Queue maintenance failed", exc_info=True)

    # Processing

    def process(self, leased: LeasedItem) -> str:
        """
        Process one leased item to a queue outcome.

        Returns:
            'completed', 'retry', 'failed' or 'lost'
        """
        item = leased.item
        payload = item.payload
        job_logger = JobLogger(item.job_id, self.job_storage)
        job_logger.log_attempt_start(item.attempts_made, item.max_attempts)

        try:
            result = self._execute(leased, job_logger)
        except LeaseLost:
            job_logger.warning("Lease lost (cancelled or expired), discarding work")
            return 'lost'
        except Exception as e:
            retryable = is_retryable(e)
            job_logger.log_error_with_context(e, f"processing upload {payload.get('upload_id')}", retryable)
            message = str(e) or type(e).__name__

            if not retryable:
                self.work_queue.fail(leased, message)
                return 'failed'

            self.work_queue.nack(leased, message)
            if item.attempts_made >= item.max_attempts:
                return 'failed'
            return 'retry'

        if not self.work_queue.ack(leased, result):
            job_logger.warning("Lease lost before acknowledgement, result discarded")
            return 'lost'

        job_logger.info(
            f"Completed: {result['cards_generated']} cards in content {result['content_id']}",
            metadata=result
        )
        return 'completed'

    def _execute(self, leased: LeasedItem, job_logger: JobLogger) -> Dict[str, Any]:
        payload = leased.payload
        upload_id = payload.get('upload_id')

        existing = self.learning_storage.get_content_for_upload(upload_id) if upload_id else None
        if existing is not None:
            job_logger.info(f"Cards already exist for upload {upload_id}, skipping generation")
            return self._result(existing, upload_id)

        document = self.extractor.extract(
            payload.get('source_type', ''),
            payload.get('source_ref', ''),
            title=payload.get('title')
        )
        job_logger.log_stage("Extracted source text", PROGRESS_EXTRACTED, {
            "words": document.word_count,
            "sections": len(document.sections),
        })
        self._checkpoint(leased, PROGRESS_EXTRACTED)

        card_set = self._generate(document, payload)
        if not card_set.title or card_set.title == "Untitled":
            card_set.title = document.title
        job_logger.log_stage("Generated cards", PROGRESS_GENERATED, {"cards": card_set.total_cards})
        self._checkpoint(leased, PROGRESS_GENERATED)

        content = self.learning_storage.save_card_set(
            card_set,
            user_id=payload.get('user_id'),
            upload_id=upload_id,
            source_type=document.source_type.value,
        )
        job_logger.log_stage("Saved cards", PROGRESS_SAVED, {"content_id": content.content_id})
        self._checkpoint(leased, PROGRESS_SAVED)

        return self._result(content, upload_id)

    def _checkpoint(self, leased: LeasedItem, progress: int):
        if not self.work_queue.report_progress(leased, progress):
            raise LeaseLost(leased.job_id)

    def _generate(self, document: SourceDocument, payload: Dict[str, Any]) -> CardSet:
        """
        Call the generator under the generation timeout.

        Each call runs on its own daemon thread, so a call that never returns
        holds only that thread and later attempts still reach the generator.
        """
        config = dict(payload.get('generation_config') or {})
        config.setdefault('title', document.title)
        config.setdefault('sections', [
            {'title': section.title, 'order': section.order, 'content': section.content}
            for section in document.sections
        ])
        timeout = self.config.generation_timeout

        future: Future = Future()
        thread = threading.Thread(
            target=self._call_generator,
            args=(future, document.text, document.source_type.value, config),
            name=f"mindscroll-generate-{payload.get('upload_id')}",
            daemon=True
        )
        thread.start()
        try:
            output = future.result(timeout=timeout)
        except FutureTimeoutError:
            if not future.done():
                raise TransientGenerationError(f"Card generation timed out after {timeout:g}s")
            raise

        card_set = output if isinstance(output, CardSet) else CardSet.from_dict(output)
        card_set.validate()
        return card_set

    def _call_generator(self, future: Future, text: str, source_type: str, config: Dict[str, Any]):
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(self.generator.generate(text, source_type, config))
        except Exception as e:
            future.set_exception(e)

    @staticmethod
    def _result(content, upload_id: Optional[str]) -> Dict[str, Any]:
        return {
            'content_id': content.content_id,
            'upload_id': upload_id,
            'title': content.title,
            'cards_generated': content.total_cards,
        }


def load_generator(path: str) -> CardGenerator:
    """
    Load a card generator from a ``module:attribute`` path.

    Classes are instantiated without arguments; other attributes are used
    as they are.
    """
    module_name, _, attribute = path.partition(':')
    if not module_name or not attribute:
        raise ValueError(f"Generator must be given as module:attribute, got {path!r}")

    module = importlib.import_module(module_name)
    generator = getattr(module, attribute)
    if isinstance(generator, type):
        generator = generator()

    if not callable(getattr(generator, 'generate', None)):
        raise ValueError(f"{path} has no generate() method")
    return generator


def run_worker(generator: CardGenerator, config: Optional[PipelineConfig] = None):
    """
    Run a worker pool in the foreground until SIGINT or SIGTERM.

    Args:
        generator: Card generation capability
        config: Pipeline configuration (from environment if None)
    """
    from .manager import JobManager

    manager = JobManager(config=config or PipelineConfig.from_env(), generator=generator)
    stop_requested = threading.Event()

    def _signal_handler(signum, frame):
        print(f"\nReceived signal {signum}, shutting down gracefully...")
        stop_requested.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    manager.start()
    print(f"Worker running with {manager.config.concurrency} slots (data: {manager.config.data_dir})")

    try:
        while not stop_requested.wait(1.0):
            pass
    finally:
        manager.shutdown()
        print("Worker stopped")
