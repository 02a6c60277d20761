import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from .config import Settings
from .models import JobStatus, Order, utcnow
from .notification_queue import NotificationQueue

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    service: str
    status: str
    message: str = ""
    duration: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "status": self.status,
            "message": self.message,
            "duration": self.duration,
        }


@dataclass
class HealthStatus:
    healthy: bool
    timestamp: datetime
    checks: List[HealthCheckResult] = field(default_factory=list)
    metrics: Dict[str, int] = field(default_factory=dict)
    circuits: List[dict] = field(default_factory=list)
    duration: int = 0

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp.isoformat() + "Z",
            "checks": [check.to_dict() for check in self.checks],
            "metrics": self.metrics,
            "circuits": self.circuits,
            "duration": self.duration,
        }


class HealthMonitor:
    """
    Aggregated service health.

    Each probe runs on its own thread with its own session and catches its
    own errors, so one failing dependency never hides the state of the others.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        email_client,
        email_queue: NotificationQueue,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.email_client = email_client
        self.email_queue = email_queue
        self.settings = settings
        self.clock = clock

    def health_check(self) -> HealthStatus:
        start = time.monotonic()
        probes = [
            ("database", self._check_database),
            ("email", self._check_email),
            ("email_queue", self._check_queue_depth),
        ]
        with ThreadPoolExecutor(max_workers=len(probes)) as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, self._run_probe, name, probe)
                for name, probe in probes
            ]
            checks = [future.result() for future in futures]

        status = HealthStatus(
            healthy=all(check.healthy for check in checks),
            timestamp=self.clock(),
            checks=checks,
            metrics=self.collect_metrics(),
            circuits=self._circuit_metrics(),
        )
        status.duration = int((time.monotonic() - start) * 1000)
        if not status.healthy:
            failing = ", ".join(c.service for c in checks if not c.healthy)
            logger.warning("Health check failed: %s", failing)
        return status

    def _run_probe(self, name: str, probe: Callable[[], str]) -> HealthCheckResult:
        start = time.monotonic()
        try:
            message = probe()
            status = "healthy"
        except Exception as exc:
            logger.warning("Health probe %s failed: %s", name, exc)
            message = str(exc) or exc.__class__.__name__
            status = "unhealthy"
        return HealthCheckResult(name, status, message, int((time.monotonic() - start) * 1000))

    # --- Probes ---

    def _check_database(self) -> str:
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
            db.query(Order.id).limit(1).all()
        finally:
            db.close()
        return "Database connection successful"

    def _check_email(self) -> str:
        self.email_client.ping()
        return "Email service reachable"

    def _check_queue_depth(self) -> str:
        db = self.session_factory()
        try:
            counts = self.email_queue.counts(db)
        finally:
            db.close()
        backlog = counts[JobStatus.PENDING.value] + counts[JobStatus.PROCESSING.value]
        threshold = self.settings.queue_depth_threshold
        if backlog >= threshold:
            raise RuntimeError(f"Email queue backlog {backlog} exceeds threshold {threshold}")
        return f"{backlog} emails waiting"

    # --- Metrics ---

    def collect_metrics(self) -> Dict[str, int]:
        now = self.clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        db = self.session_factory()
        try:
            orders_today = (
                db.query(func.count(Order.id)).filter(Order.created_at >= start_of_day).scalar()
            )
            counts = self.email_queue.counts(db)
            failed = self.email_queue.failed_since(db, now - timedelta(hours=24))
            return {
                "ordersToday": orders_today or 0,
                "pendingEmails": counts[JobStatus.PENDING.value],
                "failedEmails": failed or 0,
            }
        except Exception:
            logger.exception("Failed to collect health metrics")
            return {"ordersToday": 0, "pendingEmails": 0, "failedEmails": 0}
        finally:
            db.close()

    def _circuit_metrics(self) -> List[dict]:
        breaker = getattr(self.email_client, "circuit_breaker", None)
        return [breaker.metrics()] if breaker is not None else []
