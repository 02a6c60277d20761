import contextvars
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .config import Settings
from .errors import DispatchError
from .leases import acquire_lease, release_lease
from .logging_config import bind_correlation_id
from .models import JobPriority, JobStatus, utcnow
from .notification_queue import NotificationQueue, backoff_delay
from .providers import OutboundMessage, SendResult

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    skipped: bool = False
    duration: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class QueueProcessor:
    """
    One poll cycle over a notification queue.

    A run holds the queue's lease for its whole duration, so overlapping
    triggers (or several instances) never work the same queue at once.
    Provider calls fan out over a bounded thread pool; every database write
    happens on the thread that called ``run``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: NotificationQueue,
        dispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        jitter: bool = True,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock
        self.jitter = jitter
        self.holder = uuid.uuid4().hex

    def run(self, correlation_id: Optional[str] = None) -> ProcessResult:
        bind_correlation_id(correlation_id)
        start = time.monotonic()
        result = ProcessResult()
        db = self.session_factory()
        try:
            if not acquire_lease(db, self.queue.name, self.holder,
                                 self.settings.queue_lease_seconds, now=self.clock()):
                logger.info("Queue %s is already being processed; skipping run", self.queue.name)
                result.skipped = True
                return result
            try:
                self._process_batch(db, result)
            finally:
                db.rollback()
                release_lease(db, self.queue.name, self.holder)
        finally:
            db.close()
            result.duration = int((time.monotonic() - start) * 1000)

        logger.info(
            "Processed %d %s jobs: %d sent, %d retried, %d failed (%dms)",
            result.processed, self.queue.channel, result.successful,
            result.retried, result.failed, result.duration,
        )
        return result

    def _process_batch(self, db: Session, result: ProcessResult) -> None:
        now = self.clock()
        jobs = self.queue.fetch_due(db, now=now)
        if not jobs:
            return

        ready: List[Tuple[object, OutboundMessage]] = []
        for job in jobs:
            result.processed += 1
            if job.status == JobStatus.PROCESSING.value and job.attempts + 1 >= job.max_attempts:
                self._fail(db, job, "Abandoned while processing; attempts exhausted", result)
                continue
            self.queue.mark_processing(db, job, now=now)
            try:
                message = self.dispatcher.prepare(db, job)
            except DispatchError as exc:
                self._resolve(db, job, SendResult(success=False, error=str(exc)), result)
                continue
            ready.append((job, message))

        if not ready:
            return

        with ThreadPoolExecutor(max_workers=max(1, self.settings.queue_concurrency)) as pool:
            futures = [
                (job, pool.submit(contextvars.copy_context().run, self.dispatcher.send, message))
                for job, message in ready
            ]
            for job, future in futures:
                try:
                    outcome = future.result()
                except Exception as exc:
                    logger.exception("Unexpected error sending job %s", job.id)
                    outcome = SendResult(success=False, error=str(exc), retryable=True)
                self._resolve(db, job, outcome, result)

    def _resolve(self, db: Session, job, outcome: SendResult, result: ProcessResult) -> None:
        now = self.clock()
        if outcome.success:
            self.queue.mark_sent(db, job, outcome.provider_message_id, now=now)
            result.successful += 1
            return

        error = outcome.error or "Unknown error"
        if not outcome.retryable or job.attempts + 1 >= job.max_attempts:
            self._fail(db, job, error, result)
            return

        delay = backoff_delay(
            job.attempts + 1,
            self.settings.queue_backoff_base_seconds,
            self.settings.queue_backoff_cap_seconds,
            jitter=self.jitter,
        )
        self.queue.mark_retry(db, job, error, delay, now=now)
        result.retried += 1
        logger.warning(
            "Job %s failed (attempt %d/%d), retrying in %.1fs: %s",
            job.id, job.attempts, job.max_attempts, delay, error,
        )

    def _fail(self, db: Session, job, error: str, result: ProcessResult) -> None:
        self.queue.mark_failed(db, job, error, now=self.clock())
        result.failed += 1
        if job.priority_level == JobPriority.HIGH:
            logger.critical(
                "High-priority %s job %s (%s, order %s) permanently failed after %d attempts: %s",
                self.queue.channel, job.id, job.job_type, job.order_id, job.attempts, error,
            )
        else:
            logger.error("Job %s permanently failed after %d attempts: %s", job.id, job.attempts, error)
