import logging
from typing import Optional

from sqlalchemy.orm import Session

from .config import Settings
from .models import Order
from .notification_queue import NotificationQueue
from .notifications import enqueue_admin_alert, enqueue_order_confirmation
from .processor import OrderHooks

logger = logging.getLogger(__name__)


class NotificationHooks(OrderHooks):
    """
    Post-commit side effects of a new order.

    The store is always alerted. The customer confirmation goes out right
    away only for orders that confirm at checkout (cash); card orders get
    theirs from the payment webhook.
    """

    def __init__(self, settings: Settings, email_queue: NotificationQueue,
                 sms_queue: Optional[NotificationQueue] = None, events=None):
        self.settings = settings
        self.email_queue = email_queue
        self.sms_queue = sms_queue
        self.events = events

    def on_success(self, db: Session, order: Order) -> None:
        enqueue_admin_alert(db, self.email_queue, order, self.settings)
        if order.confirms_at_checkout:
            enqueue_order_confirmation(db, self.email_queue, self.sms_queue, order, self.settings)
        else:
            logger.info("Order %s awaits payment confirmation before notifying customer", order.order_number)

        if self.events is not None:
            self.events.publish("order.created", {
                "order_id": order.id,
                "order_number": order.order_number,
                "total": order.total_amount,
                "payment_method": order.payment_method,
            })

    def on_failure(self, error: BaseException) -> None:
        logger.warning("Order creation failed: %s", error)
