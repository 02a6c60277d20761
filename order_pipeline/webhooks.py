import hashlib
import hmac
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings
from .errors import WebhookSignatureError
from .models import (
    EmailBounce,
    EmailEvent,
    Order,
    OrderProcessingLog,
    OrderStatus,
    PaymentEvent,
    PaymentStatus,
    utcnow,
)
from .logging_config import get_correlation_id
from .notification_queue import NotificationQueue
from .notifications import enqueue_order_confirmation

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> None:
    """
    Check a hex HMAC-SHA256 of the raw body, optionally prefixed ``sha256=``.

    Raises ``WebhookSignatureError`` when the signature is missing or wrong,
    and also when no secret is configured.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookSignatureError("Invalid webhook signature")


# --- Payment provider webhook ---

class PaymentMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: Optional[str] = None


class PaymentData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)


class PaymentWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    type: str
    data: PaymentData = Field(default_factory=PaymentData)

    @property
    def order_id(self) -> Optional[str]:
        return self.data.metadata.order_id


class PaymentWebhookHandler:
    """
    Applies payment provider events to orders exactly once.

    The ledger row for ``(provider, event id)`` is written in the same commit
    as the order change and the queued confirmation, so a replayed event
    either finds the row or loses the unique-constraint race and is dropped.
    """

    def __init__(self, settings: Settings, email_queue: NotificationQueue,
                 sms_queue: Optional[NotificationQueue] = None, events=None):
        self.settings = settings
        self.provider = settings.payment_provider
        self.email_queue = email_queue
        self.sms_queue = sms_queue
        self.events = events

    def handle(self, db: Session, body: bytes) -> str:
        try:
            event = PaymentWebhookEvent.model_validate_json(body)
        except PydanticValidationError as exc:
            logger.warning("Ignoring malformed payment webhook: %s", exc.errors()[:3])
            return "ignored"

        if self._already_processed(db, event.id):
            logger.info("Payment event %s already processed", event.id)
            return "duplicate"

        try:
            db.add(PaymentEvent(
                provider=self.provider,
                event_id=event.id,
                event_type=event.type,
                order_id=event.order_id,
            ))
            db.flush()
            outcome, published = self._apply(db, event)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Payment event %s processed concurrently; skipping", event.id)
            return "duplicate"

        if self.events is not None:
            for routing_key, payload in published:
                self.events.publish(routing_key, payload)
        return outcome

    def _already_processed(self, db: Session, event_id: str) -> bool:
        return (
            db.query(PaymentEvent.id)
            .filter(PaymentEvent.provider == self.provider, PaymentEvent.event_id == event_id)
            .first()
            is not None
        )

    def _apply(self, db: Session, event: PaymentWebhookEvent) -> Tuple[str, List[tuple]]:
        if event.type not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
            logger.info("Recorded unhandled payment event type %s", event.type)
            return "ignored", []

        order = db.query(Order).filter(Order.id == event.order_id).first() if event.order_id else None
        if order is None:
            logger.warning("Payment event %s references unknown order %s", event.id, event.order_id)
            return "ignored", []

        if event.type == PAYMENT_SUCCEEDED:
            return self._payment_succeeded(db, event, order)
        return self._payment_failed(db, event, order)

    def _payment_succeeded(self, db: Session, event: PaymentWebhookEvent, order: Order):
        already_paid = order.payment_status == PaymentStatus.PAID.value
        order.payment_status = PaymentStatus.PAID.value
        order.status = OrderStatus.CONFIRMED.value
        order.payment_provider = self.provider
        order.payment_reference = event.data.id or order.payment_reference
        order.updated_at = utcnow()
        self._audit(db, order, "PAYMENT_SUCCEEDED", event)
        if already_paid:
            logger.info("Order %s was already paid; not re-sending confirmation", order.order_number)
        else:
            enqueue_order_confirmation(db, self.email_queue, self.sms_queue, order, self.settings,
                                       commit=False)
        logger.info("Payment confirmed for order %s", order.order_number)
        return "processed", [("order.payment_succeeded", self._event_payload(order, event))]

    def _payment_failed(self, db: Session, event: PaymentWebhookEvent, order: Order):
        order.payment_status = PaymentStatus.FAILED.value
        order.status = OrderStatus.PENDING.value
        order.updated_at = utcnow()
        self._audit(db, order, "PAYMENT_FAILED", event)
        logger.warning("Payment failed for order %s", order.order_number)
        return "processed", [("order.payment_failed", self._event_payload(order, event))]

    def _audit(self, db: Session, order: Order, action: str, event: PaymentWebhookEvent) -> None:
        db.add(OrderProcessingLog(
            order_id=order.id,
            action=action,
            details={"event_id": event.id, "provider": self.provider, "reference": event.data.id},
            correlation_id=get_correlation_id(),
        ))

    @staticmethod
    def _event_payload(order: Order, event: PaymentWebhookEvent) -> dict:
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "event_id": event.id,
            "payment_reference": event.data.id,
        }


# --- Email provider delivery events ---

class EmailEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    email_id: Optional[str] = None
    to: Optional[List[str]] = None
    subject: Optional[str] = None
    bounce_type: Optional[str] = None
    bounce_reason: Optional[str] = None

    @field_validator("to", mode="before")
    @classmethod
    def _single_recipient(cls, value):
        return [value] if isinstance(value, str) else value

    @property
    def recipient(self) -> Optional[str]:
        return self.to[0] if self.to else None


class EmailWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    data: EmailEventData = Field(default_factory=EmailEventData)


class EmailEventHandler:
    """Records delivery events and keeps the hard-bounce list current."""

    def handle(self, db: Session, body: bytes) -> str:
        try:
            event = EmailWebhookEvent.model_validate_json(body)
        except PydanticValidationError as exc:
            logger.warning("Ignoring malformed email webhook: %s", exc.errors()[:3])
            return "ignored"

        data = event.data
        recipient = data.recipient
        db.add(EmailEvent(
            email_id=data.email_id,
            event_type=event.type,
            recipient=recipient,
            subject=data.subject,
            payload=data.model_dump(mode="json"),
        ))

        if event.type == "email.bounced":
            logger.warning(
                "Email %s to %s bounced (%s): %s",
                data.email_id, recipient, data.bounce_type, data.bounce_reason,
            )
            if data.bounce_type == "hard" and recipient:
                self._record_bounce(db, recipient, data)
        elif event.type == "email.complained":
            logger.warning("Spam complaint for email %s", data.email_id)
        else:
            logger.info("Email event %s for %s", event.type, data.email_id)

        db.commit()
        return "processed"

    @staticmethod
    def _record_bounce(db: Session, address: str, data: EmailEventData) -> None:
        address = address.lower()
        bounce = db.query(EmailBounce).filter(EmailBounce.email == address).first()
        if bounce is None:
            bounce = EmailBounce(email=address)
            db.add(bounce)
        bounce.bounce_type = data.bounce_type
        bounce.bounce_reason = data.bounce_reason
        bounce.bounced_at = utcnow()
