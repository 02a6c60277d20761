from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from order_pipeline.config import Settings
from order_pipeline.database import Base
from order_pipeline.main import create_app
from order_pipeline.models import EmailJob, Product, SmsJob, utcnow
from order_pipeline.notification_queue import NotificationQueue
from order_pipeline.providers import SendResult


class FakeClock:
    """
    Naive-UTC clock that only moves when told to.

    Starts a minute ahead so rows stamped with the real clock are already due.
    """

    def __init__(self, start=None):
        self.now = start or utcnow() + timedelta(minutes=1)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeProvider:
    """Stands in for an email or SMS client; replays scripted send results."""

    def __init__(self, results=None, reachable=True):
        self.results = list(results or [])
        self.default = SendResult(success=True, provider_message_id="msg-default")
        self.sent = []
        self.reachable = reachable
        self.circuit_breaker = None

    def send(self, message):
        self.sent.append(message)
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return self.default

    def ping(self):
        if not self.reachable:
            raise ConnectionError("provider unreachable")


class FakeEvents:
    def __init__(self):
        self.published = []

    def publish(self, routing_key, payload):
        self.published.append((routing_key, payload))
        return True

    def close(self):
        pass


@pytest.fixture
def settings():
    s = Settings()
    s.admin_email = "admin@example.com"
    s.from_email = "orders@example.com"
    s.sms_enabled = False
    s.events_enabled = False
    s.admin_api_token = "admin-token"
    s.queue_processor_token = "queue-token"
    s.payment_webhook_secret = "payment-secret"
    s.email_webhook_secret = "email-secret"
    s.queue_max_attempts = 3
    s.queue_backoff_base_seconds = 1.0
    s.queue_backoff_cap_seconds = 300.0
    s.queue_depth_threshold = 100
    s.orphan_order_minutes = 15
    return s


@pytest.fixture
def engine(tmp_path):
    # A file database so worker threads each get their own connection.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_provider():
    return FakeProvider()


@pytest.fixture
def sms_provider():
    return FakeProvider()


@pytest.fixture
def events():
    return FakeEvents()


@pytest.fixture
def email_queue(settings):
    return NotificationQueue(EmailJob, settings)


@pytest.fixture
def sms_queue(settings):
    return NotificationQueue(SmsJob, settings)


@pytest.fixture
def products(db):
    flower = Product(
        id="prod-1",
        name="Blue Dream",
        description="Sativa-dominant hybrid",
        category="flower",
        strain_type="hybrid",
        thc_content=22.5,
        price=25.0,
        stock_quantity=10,
    )
    gummies = Product(
        id="prod-2",
        name="Sleepy Gummies",
        category="edibles",
        cbd_content=5.0,
        price=10.0,
        stock_quantity=None,
    )
    db.add_all([flower, gummies])
    db.commit()
    return {"flower": flower, "gummies": gummies}


@pytest.fixture
def order_payload():
    """Builds a valid checkout submission: 1 x $25 + 2 x $10, total $53.71."""

    def build(**overrides):
        payload = {
            "customer_name": "Jane Doe",
            "customer_email": "jane@example.com",
            "customer_phone": "(612) 555-0100",
            "delivery_first_name": "Jane",
            "delivery_last_name": "Doe",
            "delivery_address": {
                "street": "100 Main St",
                "apartment": "Apt 4",
                "city": "Minneapolis",
                "state": "mn",
                "zipcode": "55401",
                "instructions": "Ring the side door",
            },
            "items": [
                {"product_id": "prod-1", "quantity": 1, "price": 25.0, "name": "Blue Dream"},
                {"product_id": "prod-2", "quantity": 2, "price": 10.0, "name": "Sleepy Gummies"},
            ],
            "subtotal": 45.0,
            "tax": 3.71,
            "delivery_fee": 5.0,
            "total": 53.71,
            "payment_method": "cash",
        }
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
def client(settings, session_factory, email_provider, sms_provider, events):
    app = create_app(
        settings=settings,
        session_factory=session_factory,
        email_client=email_provider,
        sms_client=sms_provider,
        events=events,
    )
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
