import logging
from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from .config import Settings
from .errors import DispatchError, ValidationError
from .models import EmailBounce, JobPriority, JobType, Order
from .notification_queue import NotificationQueue, StatusUpdateData, parse_payload
from .providers import OutboundMessage, ProviderClient, SendResult
from .templates import (
    TemplateContext,
    render_admin_alert,
    render_customer_confirmation,
    render_sms_confirmation,
    render_sms_status_update,
    render_status_update,
    subject_for,
)

logger = logging.getLogger(__name__)


# --- Enqueue helpers ---

def enqueue_order_confirmation(db: Session, email_queue: NotificationQueue,
                               sms_queue: Optional[NotificationQueue], order: Order,
                               settings: Settings, commit: bool = True) -> List:
    """Queue the customer confirmation email, plus an SMS when SMS is enabled."""
    ctx = TemplateContext.from_settings(settings)
    data = {
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "total": order.total_amount,
    }
    jobs = [
        email_queue.enqueue(
            db,
            JobType.ORDER_CONFIRMATION,
            order.customer_email,
            data,
            priority=JobPriority.HIGH,
            subject=subject_for(JobType.ORDER_CONFIRMATION, order, ctx),
            order_id=order.id,
            commit=commit,
        )
    ]
    phone = order.delivery_phone or order.customer_phone_number
    if settings.sms_enabled and sms_queue is not None and phone:
        jobs.append(
            sms_queue.enqueue(
                db,
                JobType.ORDER_CONFIRMATION,
                phone,
                data,
                priority=JobPriority.HIGH,
                message=render_sms_confirmation(order, ctx),
                order_id=order.id,
                commit=commit,
            )
        )
    return jobs


def enqueue_admin_alert(db: Session, email_queue: NotificationQueue, order: Order,
                        settings: Settings, commit: bool = True):
    ctx = TemplateContext.from_settings(settings)
    return email_queue.enqueue(
        db,
        JobType.ADMIN_NOTIFICATION,
        settings.admin_email,
        {
            "order_number": order.order_number,
            "total": order.total_amount,
            "payment_method": order.payment_method,
        },
        priority=JobPriority.HIGH,
        subject=subject_for(JobType.ADMIN_NOTIFICATION, order, ctx),
        order_id=order.id,
        commit=commit,
    )


def enqueue_status_update(db: Session, email_queue: NotificationQueue, order: Order,
                          update_type: str, message: str, settings: Settings,
                          commit: bool = True):
    ctx = TemplateContext.from_settings(settings)
    return email_queue.enqueue(
        db,
        JobType.ORDER_UPDATE,
        order.customer_email,
        {"order_number": order.order_number, "update_type": update_type, "message": message},
        priority=JobPriority.NORMAL,
        subject=subject_for(JobType.ORDER_UPDATE, order, ctx, update_type=update_type),
        order_id=order.id,
        commit=commit,
    )


# --- Dispatch ---

class NotificationDispatcher:
    """
    Turns a queued job into a provider call.

    ``prepare`` runs on the caller's thread with a session: it loads the
    order and renders the body. ``send`` only talks to the provider, so it is
    safe to run on a worker thread.
    """

    def __init__(self, client: ProviderClient, channel: str, settings: Settings):
        self.client = client
        self.channel = channel
        self.settings = settings
        self.context = TemplateContext.from_settings(settings)

    def prepare(self, db: Session, job) -> OutboundMessage:
        try:
            payload = parse_payload(job.job_type, job.data)
        except ValidationError as exc:
            raise DispatchError(str(exc)) from exc

        if self.channel == "email" and self._has_bounced(db, job.recipient):
            raise DispatchError(f"Recipient {job.recipient} has hard-bounced")

        if self.channel == "sms" and job.message:
            return OutboundMessage(to=job.recipient, body=job.message)

        order = (
            db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.id == job.order_id)
            .first()
        )
        if order is None:
            raise DispatchError(f"Order {job.order_id} not found for job {job.id}")

        if self.channel == "sms":
            return OutboundMessage(to=job.recipient, body=self._render_sms(job, order, payload))

        body = self._render_email(job, order, payload)
        subject = job.subject or subject_for(
            job.job_type, order, self.context,
            update_type=getattr(payload, "update_type", None),
        )
        return OutboundMessage(
            to=job.recipient,
            subject=subject,
            body=body,
            headers={"X-Order-Number": order.order_number, "X-Job-Id": str(job.id)},
        )

    def send(self, message: OutboundMessage) -> SendResult:
        return self.client.send(message)

    def _render_email(self, job, order: Order, payload) -> str:
        job_type = JobType(job.job_type)
        if job_type == JobType.ORDER_CONFIRMATION:
            return render_customer_confirmation(order, self.context)
        if job_type == JobType.ADMIN_NOTIFICATION:
            return render_admin_alert(order, self.context)
        return render_status_update(order, payload.update_type, payload.message, self.context)

    def _render_sms(self, job, order: Order, payload) -> str:
        if isinstance(payload, StatusUpdateData):
            return render_sms_status_update(order, payload.message, self.context)
        if JobType(job.job_type) == JobType.ORDER_CONFIRMATION:
            return render_sms_confirmation(order, self.context)
        raise DispatchError(f"No SMS template for {job.job_type}")

    @staticmethod
    def _has_bounced(db: Session, address: str) -> bool:
        return (
            db.query(EmailBounce.id)
            .filter(EmailBounce.email == address.lower(), EmailBounce.bounce_type == "hard")
            .first()
            is not None
        )
