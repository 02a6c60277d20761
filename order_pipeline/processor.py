import logging
import random
import string
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .errors import (
    InsufficientStockError,
    InvalidStatusTransition,
    OrderNotFoundError,
    OrderProcessingError,
)
from .logging_config import get_correlation_id
from .models import (
    Order,
    OrderItem,
    OrderProcessingLog,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    utcnow,
)
from .notification_queue import NotificationQueue
from .notifications import enqueue_status_update
from .validators import CreateOrderRequest

logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_WEIGHT_GRAMS = 3.5


def generate_order_number(prefix: str, now: Optional[datetime] = None,
                          rng: Optional[random.Random] = None) -> str:
    """``PREFIX-YYMMDD-XXXX`` with a random uppercase alphanumeric suffix."""
    now = now or utcnow()
    rng = rng or random.SystemRandom()
    suffix = "".join(rng.choice(ORDER_NUMBER_ALPHABET) for _ in range(4))
    return f"{prefix}-{now:%y%m%d}-{suffix}"


def write_audit_log(db: Session, order_id: Optional[str], action: str,
                    details: Optional[dict] = None, status: str = "success") -> None:
    """Append an audit entry and commit it. Callers decide whether failure matters."""
    db.add(OrderProcessingLog(
        order_id=order_id,
        action=action,
        status=status,
        details=details or {},
        correlation_id=get_correlation_id(),
    ))
    db.commit()


class OrderHooks:
    """Callbacks around order creation. Both default to doing nothing."""

    def on_success(self, db: Session, order: Order) -> None:
        pass

    def on_failure(self, error: BaseException) -> None:
        pass


class OrderProcessor:
    """
    Persists a validated order.

    The header and the items are committed in separate steps. If anything
    fails after the header exists, the order's rows are removed again by a
    compensating rollback before the error propagates; stale leftovers from a
    crash in between are cleaned up by ``reconcile_orphaned_orders``.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings = default_settings,
        hooks: Optional[OrderHooks] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.settings = settings
        self.hooks = hooks or OrderHooks()
        self.clock = clock
        self.rng = rng

    def process(self, request: CreateOrderRequest) -> Order:
        try:
            order = self._insert_order(request)
            logger.info("Created order %s (%s)", order.order_number, order.id)
            self._complete_order(order, request)
        except Exception as exc:
            self._notify_failure(exc)
            raise

        self._run_success_hook(order)
        return order

    # --- Steps ---

    def _insert_order(self, request: CreateOrderRequest) -> Order:
        now = self.clock()
        address = request.delivery_address
        order = Order(
            order_number=generate_order_number(self.settings.order_number_prefix, now, self.rng),
            user_id=request.user_id,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=request.payment_method.value,
            payment_provider=(
                self.settings.payment_provider if request.payment_method == PaymentMethod.CARD else None
            ),
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            customer_phone_number=request.customer_phone,
            delivery_first_name=request.delivery_first_name,
            delivery_last_name=request.delivery_last_name,
            delivery_street_address=address.street,
            delivery_apartment=address.apartment,
            delivery_city=address.city,
            delivery_state=address.state,
            delivery_zip_code=address.zipcode,
            delivery_instructions=address.instructions,
            delivery_phone=request.customer_phone,
            subtotal=request.subtotal,
            tax_amount=request.tax,
            delivery_fee=request.delivery_fee,
            total_amount=request.total,
            created_at=now,
            updated_at=now,
        )
        self.db.add(order)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise OrderProcessingError("Failed to create order: duplicate order number", exc) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise OrderProcessingError("Failed to create order", exc) from exc
        return order

    def _complete_order(self, order: Order, request: CreateOrderRequest) -> None:
        order_id = order.id
        try:
            products = self._fetch_products(request)
            self._insert_items(order, request, products)
            self._check_stock(request, products)
        except SQLAlchemyError as exc:
            self._rollback(order_id, exc)
            raise OrderProcessingError("Failed to create order items", exc) from exc
        except Exception as exc:
            self._rollback(order_id, exc)
            raise

        self._decrement_stock(request, products)
        try:
            write_audit_log(self.db, order_id, "ORDER_CREATED", {
                "order_number": order.order_number,
                "total": order.total_amount,
                "item_count": len(request.items),
            })
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to write audit log for order %s", order_id)

        self.db.refresh(order)

    def _fetch_products(self, request: CreateOrderRequest) -> Dict[str, Product]:
        product_ids = list(OrderedDict.fromkeys(item.product_id for item in request.items))
        products = {
            product.id: product
            for product in self.db.query(Product).filter(Product.id.in_(product_ids)).all()
        }
        missing = [pid for pid in product_ids if pid not in products]
        if missing:
            logger.warning("Products not found, using submitted details: %s", ", ".join(missing))
        return products

    def _insert_items(self, order: Order, request: CreateOrderRequest,
                      products: Dict[str, Product]) -> None:
        for item in request.items:
            product = products.get(item.product_id)
            self.db.add(OrderItem(
                order_id=order.id,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.price,
                total_price=round(item.price * item.quantity, 2),
                product_name=product.name if product else item.name,
                product_price=product.price if product else item.price,
                product_weight_grams=item.weight or DEFAULT_WEIGHT_GRAMS,
                product_description=product.description if product else None,
                product_category=product.category if product else None,
                product_strain_type=product.strain_type if product else None,
                product_thc_percentage=product.thc_content if product else None,
                product_cbd_percentage=product.cbd_content if product else None,
            ))
        self.db.commit()

    @staticmethod
    def _requested_quantities(request: CreateOrderRequest) -> Dict[str, int]:
        totals: Dict[str, int] = OrderedDict()
        for item in request.items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
        return totals

    def _check_stock(self, request: CreateOrderRequest, products: Dict[str, Product]) -> None:
        for product_id, requested in self._requested_quantities(request).items():
            product = products.get(product_id)
            if product is None or product.stock_quantity is None:
                continue
            if product.stock_quantity < requested:
                raise InsufficientStockError(product_id, requested, product.stock_quantity)

    def _decrement_stock(self, request: CreateOrderRequest, products: Dict[str, Product]) -> None:
        for product_id, quantity in self._requested_quantities(request).items():
            product = products.get(product_id)
            if product is None or product.stock_quantity is None:
                continue
            try:
                updated = self.db.query(Product).filter(
                    Product.id == product_id, Product.stock_quantity >= quantity
                ).update(
                    {Product.stock_quantity: Product.stock_quantity - quantity},
                    synchronize_session=False,
                )
                self.db.commit()
                if not updated:
                    logger.warning(
                        "Stock for product %s fell below %d before decrement; left unchanged",
                        product_id, quantity,
                    )
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Failed to decrement stock for product %s", product_id)

    # --- Failure handling ---

    def _rollback(self, order_id: str, cause: BaseException) -> None:
        """Delete everything written for ``order_id``. Safe to repeat; never raises."""
        try:
            self.db.rollback()
            self.db.query(OrderItem).filter(OrderItem.order_id == order_id).delete(synchronize_session=False)
            self.db.query(Order).filter(Order.id == order_id).delete(synchronize_session=False)
            self.db.commit()
            logger.warning("Rolled back order %s after failure: %s", order_id, cause)
        except Exception:
            self.db.rollback()
            logger.critical(
                "Rollback of order %s failed; manual cleanup required", order_id, exc_info=True
            )

    def _notify_failure(self, error: BaseException) -> None:
        try:
            self.hooks.on_failure(error)
        except Exception:
            logger.exception("Order failure hook raised")

    def _run_success_hook(self, order: Order) -> None:
        try:
            self.hooks.on_success(self.db, order)
        except Exception:
            self.db.rollback()
            logger.exception("Order success hook failed for order %s", order.id)


def reconcile_orphaned_orders(db: Session, older_than_minutes: int = 15,
                              now: Optional[datetime] = None) -> List[str]:
    """Remove pending orders left without items by an interrupted checkout."""
    cutoff = (now or utcnow()) - timedelta(minutes=older_than_minutes)
    orphans = (
        db.query(Order)
        .filter(Order.status == OrderStatus.PENDING.value)
        .filter(Order.created_at < cutoff)
        .filter(~Order.items.any())
        .all()
    )
    removed = []
    for order in orphans:
        order_id, order_number = order.id, order.order_number
        db.delete(order)
        db.commit()
        write_audit_log(db, order_id, "ORDER_RECONCILED", {"order_number": order_number})
        removed.append(order_id)
    if removed:
        logger.warning("Reconciled %d orphaned orders", len(removed))
    return removed


# Forward-only lifecycle; cancellation is allowed until the driver leaves.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

STATUS_UPDATE_COPY = {
    OrderStatus.CONFIRMED: ("Order Confirmed", "Your order has been confirmed and will be prepared shortly."),
    OrderStatus.PREPARING: ("Preparing Your Order", "We're putting your order together now."),
    OrderStatus.OUT_FOR_DELIVERY: ("Out for Delivery", "Your driver is on the way. Please have your ID ready."),
    OrderStatus.DELIVERED: ("Delivered", "Your order has been delivered. Thank you!"),
    OrderStatus.CANCELLED: ("Order Cancelled", "Your order has been cancelled."),
}


def update_order_status(db: Session, order_id: str, new_status, email_queue: NotificationQueue,
                        settings: Settings = default_settings, message: Optional[str] = None) -> Order:
    """Move an order along its lifecycle and queue a status email to the customer."""
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise OrderNotFoundError(order_id)

    current, target = OrderStatus(order.status), OrderStatus(new_status)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(current.value, target.value)

    update_type, default_message = STATUS_UPDATE_COPY[target]
    order.status = target.value
    order.updated_at = utcnow()
    enqueue_status_update(db, email_queue, order, update_type, message or default_message,
                          settings, commit=False)
    db.add(OrderProcessingLog(
        order_id=order.id,
        action="ORDER_STATUS_UPDATED",
        details={"from": current.value, "to": target.value},
        correlation_id=get_correlation_id(),
    ))
    db.commit()
    logger.info("Order %s moved from %s to %s", order.order_number, current.value, target.value)
    return order
