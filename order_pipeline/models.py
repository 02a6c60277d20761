import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base  # Import the Base class from our database setup


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# --- Enumerations ---

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = (JobStatus.SENT.value, JobStatus.FAILED.value)


class JobPriority(enum.IntEnum):
    # Stored as the integer rank so "priority descending" is a plain ORDER BY.
    LOW = 1
    NORMAL = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name.lower()


class JobType(str, enum.Enum):
    ORDER_CONFIRMATION = "ORDER_CONFIRMATION"
    ADMIN_NOTIFICATION = "ADMIN_NOTIFICATION"
    ORDER_UPDATE = "ORDER_UPDATE"


# --- Catalog ---

# Defines the ORM model for a catalog product; only the fields orders snapshot.
class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    category = Column(String(100))
    strain_type = Column(String(50))
    thc_content = Column(Float)
    cbd_content = Column(Float)
    price = Column(Float, nullable=False)
    stock_quantity = Column(Integer)  # NULL means stock is not tracked.


# --- Orders ---

class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    user_id = Column(String(36), index=True)
    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String(32), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(16), nullable=False, default=PaymentMethod.CASH.value)
    payment_provider = Column(String(64))
    payment_reference = Column(String(128))

    customer_name = Column(String(100))
    customer_email = Column(String(255), nullable=False)
    customer_phone_number = Column(String(20), nullable=False)

    # Delivery snapshot, captured at order time.
    delivery_first_name = Column(String(50), nullable=False)
    delivery_last_name = Column(String(50), nullable=False)
    delivery_street_address = Column(String(200), nullable=False)
    delivery_apartment = Column(String(50))
    delivery_city = Column(String(100), nullable=False)
    delivery_state = Column(String(2), nullable=False)
    delivery_zip_code = Column(String(10), nullable=False)
    delivery_instructions = Column(String(500))
    delivery_phone = Column(String(20))

    subtotal = Column(Float, nullable=False)
    tax_amount = Column(Float, nullable=False)
    delivery_fee = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")

    @property
    def confirms_at_checkout(self) -> bool:
        """Cash orders are confirmed right away; card orders wait for the payment webhook."""
        return self.payment_method == PaymentMethod.CASH.value


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)

    # Product snapshot, immune to later catalog edits.
    product_name = Column(String(200), nullable=False)
    product_price = Column(Float, nullable=False)
    product_weight_grams = Column(Float)
    product_description = Column(Text)
    product_category = Column(String(100))
    product_strain_type = Column(String(50))
    product_thc_percentage = Column(Float)
    product_cbd_percentage = Column(Float)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="items")


# Audit trail; no foreign key so entries outlive rolled-back orders.
class OrderProcessingLog(Base):
    __tablename__ = "order_processing_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), index=True)
    action = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="success")
    details = Column(JSON)
    correlation_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utcnow)


# --- Notification queues ---

class NotificationJobMixin:
    """Columns shared by the email and SMS work queues."""

    channel = None

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String(32), nullable=False)
    recipient = Column(String(255), nullable=False)
    order_id = Column(String(36), index=True)
    data = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=int(JobPriority.NORMAL))
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    last_attempt_at = Column(DateTime)
    completed_at = Column(DateTime)
    error_message = Column(Text)
    provider_message_id = Column(String(128))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def priority_level(self) -> JobPriority:
        return JobPriority(self.priority)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class EmailJob(NotificationJobMixin, Base):
    __tablename__ = "email_queue"
    __table_args__ = (Index("ix_email_queue_due", "status", "scheduled_at"),)

    channel = "email"

    subject = Column(String(255))


class SmsJob(NotificationJobMixin, Base):
    __tablename__ = "sms_queue"
    __table_args__ = (Index("ix_sms_queue_due", "status", "scheduled_at"),)

    channel = "sms"

    message = Column(Text)  # Pre-rendered body; rendered from the order when empty.


# Mutual-exclusion token for queue runs, shared by every processor instance.
class QueueLease(Base):
    __tablename__ = "queue_leases"

    name = Column(String(64), primary_key=True)
    holder = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)


# --- Webhook ledgers ---

class PaymentEvent(Base):
    """Idempotency ledger: one row per provider event ever applied."""

    __tablename__ = "payment_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_payment_events_provider_event"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(64), nullable=False)
    event_id = Column(String(128), nullable=False)
    event_type = Column(String(64), nullable=False)
    order_id = Column(String(36))
    processed_at = Column(DateTime, nullable=False, default=utcnow)


class EmailEvent(Base):
    __tablename__ = "email_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email_id = Column(String(128), index=True)
    event_type = Column(String(64), nullable=False)
    recipient = Column(String(255))
    subject = Column(String(255))
    payload = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class EmailBounce(Base):
    __tablename__ = "email_bounces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    bounce_type = Column(String(16))
    bounce_reason = Column(Text)
    bounced_at = Column(DateTime, nullable=False, default=utcnow)
