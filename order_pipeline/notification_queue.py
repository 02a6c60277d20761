import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from .config import Settings
from .errors import InvalidJobTransition, ValidationError
from .models import (
    JobPriority,
    JobStatus,
    JobType,
    NotificationJobMixin,
    TERMINAL_JOB_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)


# --- Job payloads, one schema per job type ---

class OrderConfirmationData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_number: str
    customer_name: Optional[str] = None
    total: Optional[float] = None


class AdminAlertData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_number: str
    total: Optional[float] = None
    payment_method: Optional[str] = None


class StatusUpdateData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_number: Optional[str] = None
    update_type: str
    message: str


JOB_PAYLOADS: Dict[JobType, Type[BaseModel]] = {
    JobType.ORDER_CONFIRMATION: OrderConfirmationData,
    JobType.ADMIN_NOTIFICATION: AdminAlertData,
    JobType.ORDER_UPDATE: StatusUpdateData,
}


def parse_payload(job_type, data: Optional[dict]) -> BaseModel:
    """Validate a job's JSON payload against the schema for its type."""
    try:
        model = JOB_PAYLOADS[JobType(job_type)]
    except ValueError:
        raise ValidationError(f"Unknown job type {job_type!r}") from None
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as exc:
        issues = [
            {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {job_type} payload", issues) from None


def backoff_delay(
    attempts: int,
    base: float,
    cap: float,
    jitter: bool = True,
    rng: Callable[[], float] = random.random,
) -> float:
    """``min(base * 2**attempts, cap)`` seconds plus up to 10% jitter."""
    delay = min(base * (2 ** attempts), cap)
    if jitter:
        delay += rng() * 0.1 * delay
    return delay


class NotificationQueue:
    """
    Durable work queue over one job table (``EmailJob`` or ``SmsJob``).

    Jobs move ``pending -> processing -> sent``, ``processing -> pending``
    (rescheduled) or ``pending/processing -> failed``. The ``mark_*`` methods
    are the only writers of ``status`` and ``attempts``; sent and failed jobs
    are never touched again.
    """

    def __init__(self, model: Type[NotificationJobMixin], settings: Settings):
        self.model = model
        self.settings = settings

    @property
    def name(self) -> str:
        return self.model.__tablename__

    @property
    def channel(self) -> str:
        return self.model.channel

    def enqueue(
        self,
        db: Session,
        job_type,
        recipient: str,
        data: Optional[dict] = None,
        priority: JobPriority = JobPriority.NORMAL,
        subject: Optional[str] = None,
        message: Optional[str] = None,
        order_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        commit: bool = True,
    ):
        job_type = JobType(job_type)
        payload = parse_payload(job_type, data)
        job = self.model(
            job_type=job_type.value,
            recipient=recipient,
            order_id=order_id,
            data=payload.model_dump(exclude_none=True),
            priority=int(JobPriority(priority)),
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self.settings.queue_max_attempts,
            scheduled_at=scheduled_at or utcnow(),
        )
        if self.channel == "email":
            job.subject = subject
        elif message is not None:
            job.message = message
        db.add(job)
        if commit:
            db.commit()
            db.refresh(job)
        else:
            db.flush()
        logger.info(
            "Queued %s %s job %s for %s (priority=%s)",
            self.channel, job_type.value, job.id, recipient, JobPriority(priority).label,
        )
        return job

    def fetch_due(self, db: Session, now: Optional[datetime] = None, limit: Optional[int] = None,
                  stale_after: Optional[int] = None) -> List[NotificationJobMixin]:
        now = now or utcnow()
        limit = limit or self.settings.queue_batch_size
        if stale_after is None:
            stale_after = self.settings.queue_stale_after_seconds
        stale_before = now - timedelta(seconds=stale_after)
        Job = self.model
        stuck = and_(
            Job.status == JobStatus.PROCESSING.value,
            or_(Job.last_attempt_at.is_(None), Job.last_attempt_at <= stale_before),
        )
        return (
            db.query(Job)
            .filter(or_(Job.status == JobStatus.PENDING.value, stuck))
            .filter(Job.scheduled_at <= now)
            .filter(Job.attempts < Job.max_attempts)
            .order_by(Job.priority.desc(), Job.scheduled_at.asc(), Job.id.asc())
            .limit(limit)
            .all()
        )

    # --- Transitions ---

    def _require(self, job, target: JobStatus, *allowed: JobStatus) -> None:
        if job.status not in {s.value for s in allowed}:
            raise InvalidJobTransition(job.id, job.status, target.value)

    def mark_processing(self, db: Session, job, now: Optional[datetime] = None) -> None:
        self._require(job, JobStatus.PROCESSING, JobStatus.PENDING, JobStatus.PROCESSING)
        if job.status == JobStatus.PROCESSING.value:
            # Re-pickup of a stale job: the abandoned attempt counts.
            job.attempts = job.attempts + 1
        job.status = JobStatus.PROCESSING.value
        job.last_attempt_at = now or utcnow()
        db.commit()

    def mark_sent(self, db: Session, job, provider_message_id: Optional[str] = None,
                  now: Optional[datetime] = None) -> None:
        self._require(job, JobStatus.SENT, JobStatus.PROCESSING)
        job.status = JobStatus.SENT.value
        job.attempts = job.attempts + 1
        job.completed_at = now or utcnow()
        job.provider_message_id = provider_message_id
        job.error_message = None
        db.commit()

    def mark_retry(self, db: Session, job, error: str, delay_seconds: float,
                   now: Optional[datetime] = None) -> None:
        self._require(job, JobStatus.PENDING, JobStatus.PROCESSING)
        now = now or utcnow()
        job.status = JobStatus.PENDING.value
        job.attempts = job.attempts + 1
        job.scheduled_at = now + timedelta(seconds=delay_seconds)
        job.error_message = error
        db.commit()

    def mark_failed(self, db: Session, job, error: str, count_attempt: bool = True,
                    now: Optional[datetime] = None) -> None:
        self._require(job, JobStatus.FAILED, JobStatus.PENDING, JobStatus.PROCESSING)
        if count_attempt:
            job.attempts = job.attempts + 1
        job.status = JobStatus.FAILED.value
        job.completed_at = now or utcnow()
        job.error_message = error
        db.commit()

    # --- Maintenance ---

    def cleanup(self, db: Session, retention_days: Optional[int] = None,
                now: Optional[datetime] = None) -> int:
        """Delete sent and failed jobs older than the retention window."""
        if retention_days is None:
            retention_days = self.settings.queue_retention_days
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        Job = self.model
        deleted = (
            db.query(Job)
            .filter(Job.status.in_(TERMINAL_JOB_STATUSES))
            .filter(func.coalesce(Job.completed_at, Job.created_at) < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info("Removed %d finished jobs from %s", deleted, self.name)
        return deleted

    def counts(self, db: Session) -> Dict[str, int]:
        rows = db.query(self.model.status, func.count(self.model.id)).group_by(self.model.status).all()
        result = {status.value: 0 for status in JobStatus}
        result.update({status: count for status, count in rows})
        return result

    def failed_since(self, db: Session, since: datetime) -> int:
        return (
            db.query(func.count(self.model.id))
            .filter(self.model.status == JobStatus.FAILED.value)
            .filter(self.model.completed_at >= since)
            .scalar()
        )
