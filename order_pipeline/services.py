from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .config import Settings
from .hooks import NotificationHooks
from .messaging import EventPublisher
from .models import EmailJob, SmsJob
from .monitoring import HealthMonitor
from .notification_queue import NotificationQueue
from .notifications import NotificationDispatcher
from .providers import ProviderClient, build_email_client, build_sms_client
from .queue_processor import QueueProcessor
from .webhooks import EmailEventHandler, PaymentWebhookHandler

CHANNELS = ("email", "sms")


class Services:
    """
    Long-lived collaborators shared by every request.

    Provider clients live here so their rate limiters and circuit breakers
    persist across requests within the process.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        email_client: Optional[ProviderClient] = None,
        sms_client: Optional[ProviderClient] = None,
        events: Optional[EventPublisher] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.email_client = email_client or build_email_client(settings)
        self.sms_client = sms_client or build_sms_client(settings)
        self.email_queue = NotificationQueue(EmailJob, settings)
        self.sms_queue = NotificationQueue(SmsJob, settings)
        self.events = events or EventPublisher(settings)

    def order_hooks(self) -> NotificationHooks:
        return NotificationHooks(self.settings, self.email_queue, self.sms_queue, self.events)

    def payment_webhook(self) -> PaymentWebhookHandler:
        return PaymentWebhookHandler(self.settings, self.email_queue, self.sms_queue, self.events)

    def email_events(self) -> EmailEventHandler:
        return EmailEventHandler()

    def queue(self, channel: str) -> NotificationQueue:
        return self.email_queue if channel == "email" else self.sms_queue

    def queue_processors(self, channel: str = "all") -> List[QueueProcessor]:
        channels = CHANNELS if channel == "all" else (channel,)
        processors = []
        for name in channels:
            client = self.email_client if name == "email" else self.sms_client
            dispatcher = NotificationDispatcher(client, name, self.settings)
            processors.append(QueueProcessor(self.session_factory, self.queue(name), dispatcher, self.settings))
        return processors

    def health_monitor(self) -> HealthMonitor:
        return HealthMonitor(self.session_factory, self.email_client, self.email_queue, self.settings)

    def close(self) -> None:
        self.events.close()
