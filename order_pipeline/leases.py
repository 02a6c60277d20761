from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import QueueLease, utcnow


def acquire_lease(db: Session, name: str, holder: str, ttl_seconds: int,
                  now: Optional[datetime] = None) -> bool:
    """
    Try to take the named lease for ``ttl_seconds``.

    Succeeds when no lease row exists or the existing one has expired. The
    takeover is a single conditional UPDATE and the first insert relies on the
    primary key, so two processors racing for the same lease cannot both win.
    """
    now = now or utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)

    taken = (
        db.query(QueueLease)
        .filter(QueueLease.name == name, QueueLease.expires_at <= now)
        .update({"holder": holder, "expires_at": expires_at}, synchronize_session=False)
    )
    db.commit()
    if taken:
        return True

    if db.query(QueueLease).filter(QueueLease.name == name).first() is not None:
        return False

    db.add(QueueLease(name=name, holder=holder, expires_at=expires_at))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def release_lease(db: Session, name: str, holder: str) -> None:
    """Drop the lease if ``holder`` still owns it."""
    db.query(QueueLease).filter(
        QueueLease.name == name, QueueLease.holder == holder
    ).delete(synchronize_session=False)
    db.commit()
