import logging
import random
import re
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from order_pipeline.errors import (
    InsufficientStockError,
    InvalidStatusTransition,
    OrderNotFoundError,
    OrderProcessingError,
)
from order_pipeline.models import (
    EmailJob,
    JobType,
    Order,
    OrderItem,
    OrderProcessingLog,
    OrderStatus,
    Product,
    utcnow,
)
from order_pipeline.processor import (
    OrderHooks,
    OrderProcessor,
    generate_order_number,
    reconcile_orphaned_orders,
    update_order_status,
)
from order_pipeline.validators import validate_order


class RecordingHooks(OrderHooks):
    def __init__(self, fail_on_success=False):
        self.succeeded = []
        self.failed = []
        self.fail_on_success = fail_on_success

    def on_success(self, db, order):
        self.succeeded.append(order.id)
        if self.fail_on_success:
            raise RuntimeError("hook exploded")

    def on_failure(self, error):
        self.failed.append(error)


class FailingItemsProcessor(OrderProcessor):
    """Writes the first item, then fails the way a dropped connection would."""

    def _insert_items(self, order, request, products):
        first = request.items[0]
        self.db.add(OrderItem(
            order_id=order.id,
            product_id=first.product_id,
            quantity=first.quantity,
            unit_price=first.price,
            total_price=first.price * first.quantity,
            product_name=first.name,
            product_price=first.price,
        ))
        self.db.commit()
        raise SQLAlchemyError("connection lost")


def _single_item_payload(order_payload, quantity, product_id="prod-1", price=25.0):
    subtotal = round(price * quantity, 2)
    return order_payload(
        items=[{"product_id": product_id, "quantity": quantity, "price": price, "name": "Blue Dream"}],
        subtotal=subtotal,
        tax=0.0,
        delivery_fee=5.0,
        total=subtotal + 5.0,
    )


def test_order_number_format():
    number = generate_order_number("DD", datetime(2026, 10, 17, 12, 0), random.Random(7))

    assert re.fullmatch(r"DD-261017-[A-Z0-9]{4}", number)


def test_process_creates_order_with_snapshots(db, settings, products, order_payload):
    hooks = RecordingHooks()

    order = OrderProcessor(db, settings, hooks=hooks).process(validate_order(order_payload()))

    assert order.status == OrderStatus.PENDING.value
    assert order.payment_status == "pending"
    assert order.total_amount == pytest.approx(53.71)
    assert order.delivery_state == "MN"
    assert order.delivery_apartment == "Apt 4"
    assert re.fullmatch(r"DD-\d{6}-[A-Z0-9]{4}", order.order_number)

    items = order.items
    assert [item.product_id for item in items] == ["prod-1", "prod-2"]
    assert items[0].product_name == "Blue Dream"
    assert items[0].product_thc_percentage == 22.5
    assert items[0].product_strain_type == "hybrid"
    assert items[0].product_weight_grams == 3.5
    assert items[1].total_price == pytest.approx(20.0)
    assert items[1].product_cbd_percentage == 5.0
    assert hooks.succeeded == [order.id]


def test_process_decrements_tracked_stock_only(db, settings, products, order_payload):
    OrderProcessor(db, settings).process(validate_order(order_payload()))

    db.expire_all()
    assert db.get(Product, "prod-1").stock_quantity == 9
    assert db.get(Product, "prod-2").stock_quantity is None


def test_process_writes_audit_log(db, settings, products, order_payload):
    order = OrderProcessor(db, settings).process(validate_order(order_payload()))

    entry = db.query(OrderProcessingLog).filter_by(order_id=order.id, action="ORDER_CREATED").one()
    assert entry.details == {"order_number": order.order_number, "total": 53.71, "item_count": 2}


def test_missing_product_falls_back_to_submitted_details(db, settings, order_payload, caplog):
    payload = order_payload(
        items=[{"product_id": "ghost", "quantity": 1, "price": 45.0, "name": "Mystery Item", "weight": 7}],
    )

    with caplog.at_level(logging.WARNING, logger="order_pipeline.processor"):
        order = OrderProcessor(db, settings).process(validate_order(payload))

    item = order.items[0]
    assert item.product_name == "Mystery Item"
    assert item.product_price == 45.0
    assert item.product_weight_grams == 7
    assert "ghost" in caplog.text


def test_ordering_exactly_available_stock_succeeds(db, settings, products, order_payload):
    OrderProcessor(db, settings).process(validate_order(_single_item_payload(order_payload, 10)))

    db.expire_all()
    assert db.get(Product, "prod-1").stock_quantity == 0


def test_ordering_one_more_than_stock_fails_cleanly(db, settings, products, order_payload):
    hooks = RecordingHooks()

    with pytest.raises(InsufficientStockError) as exc_info:
        OrderProcessor(db, settings, hooks=hooks).process(
            validate_order(_single_item_payload(order_payload, 11))
        )

    assert exc_info.value.product_id == "prod-1"
    assert exc_info.value.requested == 11
    assert exc_info.value.available == 10
    assert db.query(Order).count() == 0
    assert db.query(OrderItem).count() == 0
    db.expire_all()
    assert db.get(Product, "prod-1").stock_quantity == 10
    assert len(hooks.failed) == 1 and hooks.succeeded == []


class ConcurrentSaleProcessor(OrderProcessor):
    """Another checkout takes the last units between the stock check and the decrement."""

    def _check_stock(self, request, products):
        super()._check_stock(request, products)
        self.db.query(Product).filter(Product.id == "prod-1").update(
            {Product.stock_quantity: 0}, synchronize_session=False
        )
        self.db.commit()


def test_decrement_never_drives_stock_negative(db, settings, products, order_payload, caplog):
    with caplog.at_level(logging.WARNING, logger="order_pipeline.processor"):
        order = ConcurrentSaleProcessor(db, settings).process(
            validate_order(_single_item_payload(order_payload, 2))
        )

    assert db.get(Order, order.id) is not None
    db.expire_all()
    assert db.get(Product, "prod-1").stock_quantity == 0
    assert "left unchanged" in caplog.text


def test_stock_check_sums_repeated_lines(db, settings, products, order_payload):
    payload = order_payload(
        items=[
            {"product_id": "prod-1", "quantity": 6, "price": 25.0, "name": "Blue Dream"},
            {"product_id": "prod-1", "quantity": 5, "price": 25.0, "name": "Blue Dream"},
        ],
        subtotal=275.0, tax=0.0, delivery_fee=5.0, total=280.0,
    )

    with pytest.raises(InsufficientStockError):
        OrderProcessor(db, settings).process(validate_order(payload))


def test_item_insert_failure_rolls_back_order(db, settings, products, order_payload):
    hooks = RecordingHooks()

    with pytest.raises(OrderProcessingError) as exc_info:
        FailingItemsProcessor(db, settings, hooks=hooks).process(validate_order(order_payload()))

    assert isinstance(exc_info.value.cause, SQLAlchemyError)
    assert db.query(Order).count() == 0
    assert db.query(OrderItem).count() == 0
    assert isinstance(hooks.failed[0], OrderProcessingError)


def test_failed_rollback_is_logged_not_raised(db, settings, products, order_payload, caplog, monkeypatch):
    processor = FailingItemsProcessor(db, settings)
    real_commit = db.commit
    calls = {"n": 0}

    def flaky_commit():
        calls["n"] += 1
        # Header and first item commit; the rollback's commit fails.
        if calls["n"] > 2:
            raise SQLAlchemyError("database gone")
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)

    with caplog.at_level(logging.CRITICAL, logger="order_pipeline.processor"):
        with pytest.raises(OrderProcessingError):
            processor.process(validate_order(order_payload()))

    assert "manual cleanup required" in caplog.text


def test_duplicate_order_number_surfaces_as_processing_error(db, settings, products, order_payload):
    now = datetime(2026, 10, 17, 9, 30)
    request = validate_order(order_payload())
    first = OrderProcessor(db, settings, clock=lambda: now, rng=random.Random(42)).process(request)

    with pytest.raises(OrderProcessingError):
        OrderProcessor(db, settings, clock=lambda: now, rng=random.Random(42)).process(request)

    assert db.query(Order).count() == 1
    assert db.query(Order).one().id == first.id


def test_success_hook_failure_does_not_fail_order(db, settings, products, order_payload, caplog):
    hooks = RecordingHooks(fail_on_success=True)

    with caplog.at_level(logging.ERROR, logger="order_pipeline.processor"):
        order = OrderProcessor(db, settings, hooks=hooks).process(validate_order(order_payload()))

    assert db.query(Order).filter_by(id=order.id).count() == 1
    assert "success hook failed" in caplog.text


def test_reconcile_removes_only_stale_empty_orders(db, settings, products, order_payload):
    processor = OrderProcessor(db, settings)
    stale = processor.process(validate_order(order_payload()))
    recent = processor.process(validate_order(order_payload()))
    complete = processor.process(validate_order(order_payload()))

    old = utcnow() - timedelta(minutes=30)
    for order in (stale, recent):
        db.query(OrderItem).filter(OrderItem.order_id == order.id).delete()
    stale.created_at = old
    complete.created_at = old
    db.commit()
    stale_id = stale.id

    removed = reconcile_orphaned_orders(db, older_than_minutes=15)

    assert removed == [stale_id]
    remaining = {order.id for order in db.query(Order).all()}
    assert remaining == {recent.id, complete.id}
    assert db.query(OrderProcessingLog).filter_by(order_id=stale_id, action="ORDER_RECONCILED").count() == 1


def test_update_status_enqueues_customer_update(db, settings, products, order_payload, email_queue):
    order = OrderProcessor(db, settings).process(validate_order(order_payload()))

    update_order_status(db, order.id, "confirmed", email_queue, settings)

    db.expire_all()
    assert db.get(Order, order.id).status == "confirmed"
    job = db.query(EmailJob).one()
    assert job.job_type == JobType.ORDER_UPDATE.value
    assert job.recipient == "jane@example.com"
    assert job.data["update_type"] == "Order Confirmed"
    assert job.subject == f"Order Confirmed - {order.order_number}"


def test_update_status_rejects_backwards_moves(db, settings, products, order_payload, email_queue):
    order = OrderProcessor(db, settings).process(validate_order(order_payload()))
    order.status = OrderStatus.DELIVERED.value
    db.commit()

    with pytest.raises(InvalidStatusTransition):
        update_order_status(db, order.id, "pending", email_queue, settings)

    assert db.query(EmailJob).count() == 0


def test_update_status_unknown_order(db, settings, email_queue):
    with pytest.raises(OrderNotFoundError):
        update_order_status(db, "missing", "confirmed", email_queue, settings)
