import json
import logging
import threading
import time
from typing import Callable, Optional

import pika

from ..config import Settings
from ..logging_config import get_correlation_id

logger = logging.getLogger(__name__)


class RabbitMQProducer:
    """
    Publishes JSON events to a durable topic exchange.

    Connecting is retried a bounded number of times so a missing broker
    cannot hang the caller.
    """

    def __init__(self, host: str = "rabbitmq", exchange_name: str = "events",
                 exchange_type: str = "topic", connect_attempts: int = 3, retry_delay: float = 1.0):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.connect_attempts = connect_attempts
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None

    def connect(self):
        """Open the connection and declare the exchange, retrying while the broker boots."""
        for attempt in range(1, self.connect_attempts + 1):
            try:
                credentials = pika.PlainCredentials("guest", "guest")
                parameters = pika.ConnectionParameters(
                    host=self.host,
                    credentials=credentials,
                    heartbeat=600,
                    blocked_connection_timeout=300,
                )
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                # Durable so the exchange survives broker restarts.
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True,
                )
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                if attempt == self.connect_attempts:
                    raise
                logger.warning(
                    "RabbitMQ not ready (attempt %d/%d), retrying in %.0fs",
                    attempt, self.connect_attempts, self.retry_delay,
                )
                time.sleep(self.retry_delay)

    def publish(self, routing_key: str, message: dict):
        """
        Publish ``message`` with ``routing_key`` (e.g. 'order.created').

        Reconnects first if the connection was lost.
        """
        if not self.connection or self.connection.is_closed:
            self.connect()

        self.channel.basic_publish(
            exchange=self.exchange_name,
            routing_key=routing_key,
            body=json.dumps(message),
            properties=pika.BasicProperties(
                delivery_mode=2,  # Persistent
                content_type="application/json",
            ),
        )
        logger.info("Published event %s", routing_key)

    def close(self):
        if self.connection and not self.connection.is_closed:
            self.connection.close()


class EventPublisher:
    """
    Best-effort domain event bus.

    Publishing never raises: a broker outage is logged and the event dropped.
    Disabled entirely unless ``EVENTS_ENABLED`` is set. A ``BlockingConnection``
    is not thread-safe, so publishes are serialized.
    """

    def __init__(self, settings: Settings,
                 producer_factory: Optional[Callable[[], RabbitMQProducer]] = None):
        self.enabled = settings.events_enabled
        self._factory = producer_factory or (
            lambda: RabbitMQProducer(host=settings.rabbitmq_host, exchange_name=settings.rabbitmq_exchange)
        )
        self._producer: Optional[RabbitMQProducer] = None
        self._lock = threading.Lock()

    def publish(self, routing_key: str, payload: dict) -> bool:
        if not self.enabled:
            return False
        event = dict(payload, correlation_id=get_correlation_id())
        with self._lock:
            try:
                if self._producer is None:
                    self._producer = self._factory()
                self._producer.publish(routing_key, event)
                return True
            except Exception:
                logger.exception("Failed to publish event %s", routing_key)
                self._reset()
                return False

    def _reset(self):
        producer, self._producer = self._producer, None
        if producer is None:
            return
        try:
            producer.close()
        except Exception:
            logger.debug("Error closing RabbitMQ connection", exc_info=True)

    def close(self):
        with self._lock:
            self._reset()
