from datetime import timedelta

import pytest

from order_pipeline.errors import InvalidJobTransition, ValidationError
from order_pipeline.models import EmailJob, JobPriority, JobStatus, JobType, utcnow
from order_pipeline.notification_queue import backoff_delay


def _enqueue(queue, db, priority=JobPriority.NORMAL, scheduled_at=None, **kwargs):
    return queue.enqueue(
        db,
        JobType.ORDER_CONFIRMATION,
        "jane@example.com",
        {"order_number": "DD-261017-AB12"},
        priority=priority,
        subject="Order Confirmed",
        scheduled_at=scheduled_at,
        **kwargs,
    )


def test_enqueue_stores_pending_job(db, email_queue):
    job = _enqueue(email_queue, db, priority=JobPriority.HIGH, order_id="order-1")

    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.priority_level == JobPriority.HIGH
    assert job.data == {"order_number": "DD-261017-AB12"}
    assert job.subject == "Order Confirmed"


def test_enqueue_rejects_payload_not_matching_job_type(db, email_queue):
    with pytest.raises(ValidationError) as exc_info:
        email_queue.enqueue(db, JobType.ORDER_UPDATE, "jane@example.com", {"order_number": "DD-1"})

    assert {issue["path"] for issue in exc_info.value.issues} == {"update_type", "message"}
    assert db.query(EmailJob).count() == 0


def test_enqueue_rejects_unknown_job_type(db, email_queue):
    with pytest.raises(ValueError):
        email_queue.enqueue(db, "NEWSLETTER", "jane@example.com", {})


def test_sms_jobs_keep_prerendered_message(db, sms_queue):
    job = sms_queue.enqueue(
        db, JobType.ORDER_CONFIRMATION, "16125550100", {"order_number": "DD-1"}, message="Hi there"
    )

    assert job.message == "Hi there"


def test_fetch_due_orders_by_priority_then_schedule(db, email_queue):
    now = utcnow()
    normal_early = _enqueue(email_queue, db, scheduled_at=now - timedelta(minutes=10))
    high_late = _enqueue(email_queue, db, priority=JobPriority.HIGH, scheduled_at=now - timedelta(minutes=1))
    high_early = _enqueue(email_queue, db, priority=JobPriority.HIGH, scheduled_at=now - timedelta(minutes=5))
    low = _enqueue(email_queue, db, priority=JobPriority.LOW, scheduled_at=now - timedelta(hours=1))
    _enqueue(email_queue, db, priority=JobPriority.HIGH, scheduled_at=now + timedelta(minutes=5))

    due = email_queue.fetch_due(db, now=now)

    assert [job.id for job in due] == [high_early.id, high_late.id, normal_early.id, low.id]


def test_fetch_due_respects_batch_limit(db, email_queue):
    for _ in range(5):
        _enqueue(email_queue, db)

    assert len(email_queue.fetch_due(db, now=utcnow() + timedelta(seconds=1), limit=2)) == 2


def test_fetch_due_skips_terminal_exhausted_and_fresh_processing(db, email_queue):
    now = utcnow()
    sent = _enqueue(email_queue, db)
    exhausted = _enqueue(email_queue, db)
    busy = _enqueue(email_queue, db)
    stuck = _enqueue(email_queue, db)

    email_queue.mark_processing(db, sent, now=now)
    email_queue.mark_sent(db, sent, "msg-1", now=now)
    exhausted.attempts = exhausted.max_attempts
    email_queue.mark_processing(db, busy, now=now)
    email_queue.mark_processing(db, stuck, now=now - timedelta(minutes=10))
    db.commit()

    due = email_queue.fetch_due(db, now=now + timedelta(seconds=1), stale_after=300)

    assert [job.id for job in due] == [stuck.id]


def test_sent_job_is_never_touched_again(db, email_queue):
    job = _enqueue(email_queue, db)
    email_queue.mark_processing(db, job)
    email_queue.mark_sent(db, job, "msg-1")

    with pytest.raises(InvalidJobTransition):
        email_queue.mark_processing(db, job)
    with pytest.raises(InvalidJobTransition):
        email_queue.mark_retry(db, job, "boom", 5)
    with pytest.raises(InvalidJobTransition):
        email_queue.mark_failed(db, job, "boom")

    assert job.status == JobStatus.SENT.value
    assert job.is_terminal
    assert job.provider_message_id == "msg-1"
    assert job.completed_at is not None


def test_sent_requires_processing(db, email_queue):
    job = _enqueue(email_queue, db)

    with pytest.raises(InvalidJobTransition):
        email_queue.mark_sent(db, job, "msg-1")


def test_retry_reschedules_with_delay(db, email_queue):
    now = utcnow()
    job = _enqueue(email_queue, db)
    email_queue.mark_processing(db, job, now=now)

    email_queue.mark_retry(db, job, "timeout", 4, now=now)

    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.scheduled_at == now + timedelta(seconds=4)
    assert job.error_message == "timeout"


def test_repicking_stale_job_counts_abandoned_attempt(db, email_queue):
    now = utcnow()
    job = _enqueue(email_queue, db)
    email_queue.mark_processing(db, job, now=now - timedelta(minutes=10))

    email_queue.mark_processing(db, job, now=now)

    assert job.attempts == 1
    assert job.last_attempt_at == now


def test_backoff_grows_and_caps():
    delays = [backoff_delay(n, 1.0, 10.0, jitter=False) for n in range(6)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_backoff_jitter_bounded_to_ten_percent():
    assert backoff_delay(3, 1.0, 300.0, rng=lambda: 0.999) == pytest.approx(8.0 + 0.7992)
    assert backoff_delay(3, 1.0, 300.0, rng=lambda: 0.0) == 8.0


def test_cleanup_deletes_old_terminal_jobs_only(db, email_queue):
    now = utcnow()
    old_sent = _enqueue(email_queue, db)
    recent_sent = _enqueue(email_queue, db)
    old_pending = _enqueue(email_queue, db, scheduled_at=now - timedelta(days=40))
    for job, finished in ((old_sent, now - timedelta(days=31)), (recent_sent, now - timedelta(days=1))):
        email_queue.mark_processing(db, job, now=finished)
        email_queue.mark_sent(db, job, "msg", now=finished)
    old_pending_id, recent_id = old_pending.id, recent_sent.id

    deleted = email_queue.cleanup(db, retention_days=30, now=now)

    assert deleted == 1
    assert {job.id for job in db.query(EmailJob).all()} == {old_pending_id, recent_id}


def test_counts_and_failed_since(db, email_queue):
    now = utcnow()
    _enqueue(email_queue, db)
    failed = _enqueue(email_queue, db)
    email_queue.mark_failed(db, failed, "bad address", now=now - timedelta(hours=2))
    old_failed = _enqueue(email_queue, db)
    email_queue.mark_failed(db, old_failed, "bad address", now=now - timedelta(days=2))

    counts = email_queue.counts(db)

    assert counts == {"pending": 1, "processing": 0, "sent": 0, "failed": 2}
    assert email_queue.failed_since(db, now - timedelta(hours=24)) == 1
