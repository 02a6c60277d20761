import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, selectinload

from . import __version__
from .config import Settings, settings as default_settings
from .database import SessionLocal, init_db
from .errors import (
    InsufficientStockError,
    InvalidStatusTransition,
    OrderNotFoundError,
    OrderProcessingError,
    ValidationError,
    WebhookSignatureError,
)
from .logging_config import bind_correlation_id, configure_logging, get_correlation_id
from .models import Order, OrderStatus
from .processor import OrderProcessor, reconcile_orphaned_orders, update_order_status
from .queue_processor import ProcessResult
from .services import Services
from .validators import validate_order
from .webhooks import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class StatusUpdateRequest(BaseModel):
    """Defines the body of an admin order status change."""
    status: OrderStatus
    message: Optional[str] = Field(None, max_length=500)


def _body(request: Request, payload: dict, status_code: int = 200) -> JSONResponse:
    payload["correlationId"] = getattr(request.state, "correlation_id", get_correlation_id())
    return JSONResponse(payload, status_code=status_code)


def _require_bearer(request: Request, expected: str) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <expected>``."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    # An unset token locks the endpoint rather than opening it.
    if not expected or scheme.lower() != "bearer" or not secrets.compare_digest(
        token.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _order_summary(order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "total": order.total_amount,
    }


def _order_details(order: Order) -> dict:
    return {
        **_order_summary(order),
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "customer_email": order.customer_email,
        "subtotal": order.subtotal,
        "tax": order.tax_amount,
        "delivery_fee": order.delivery_fee,
        "created_at": order.created_at.isoformat() + "Z",
        "items": [
            {
                "product_id": item.product_id,
                "name": item.product_name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for item in order.items
        ],
    }


# --- Exception handlers ---

def _validation_failed(request: Request, exc: ValidationError):
    return _body(request, {"success": False, "error": exc.message, "details": exc.issues}, 400)


def _request_invalid(request: Request, exc: RequestValidationError):
    details = [
        {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return _body(request, {"success": False, "error": "Validation failed", "details": details}, 400)


def _out_of_stock(request: Request, exc: InsufficientStockError):
    return _body(request, {
        "success": False,
        "error": str(exc),
        "productId": exc.product_id,
        "requested": exc.requested,
        "available": exc.available,
    }, 409)


def _not_found(request: Request, exc: OrderNotFoundError):
    return _body(request, {"success": False, "error": str(exc)}, 404)


def _bad_transition(request: Request, exc: InvalidStatusTransition):
    return _body(request, {"success": False, "error": str(exc)}, 409)


def _bad_signature(request: Request, exc: WebhookSignatureError):
    logger.warning("Rejected webhook on %s: %s", request.url.path, exc)
    return _body(request, {"success": False, "error": "Unauthorized"}, 401)


def _processing_failed(request: Request, exc: OrderProcessingError):
    logger.error("Order processing failed: %s", exc.message, exc_info=exc)
    return _body(request, {"success": False, "error": "Failed to process order"}, 500)


def _unexpected(request: Request, exc: Exception):
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return _body(request, {"success": False, "error": "Internal server error"}, 500)


# --- Dependencies ---

def get_db(request: Request):
    """FastAPI dependency to get a DB session for a single request."""
    db = request.app.state.services.session_factory()
    try:
        yield db
    finally:
        # Ensure the session is always closed after the request is finished.
        db.close()


def get_services(request: Request) -> Services:
    return request.app.state.services


async def raw_body(request: Request) -> bytes:
    return await request.body()


def create_app(
    settings: Optional[Settings] = None,
    session_factory=None,
    email_client=None,
    sms_client=None,
    events=None,
) -> FastAPI:
    settings = settings or default_settings
    session_factory = session_factory or SessionLocal
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create database tables on startup if they don't exist.
        init_db(bind=session_factory.kw.get("bind"))
        logger.info("Order pipeline %s started", __version__)
        yield
        app.state.services.close()

    app = FastAPI(title="Order Pipeline", version=__version__, lifespan=lifespan)
    app.state.services = Services(settings, session_factory, email_client, sms_client, events)

    app.add_exception_handler(ValidationError, _validation_failed)
    app.add_exception_handler(RequestValidationError, _request_invalid)
    app.add_exception_handler(InsufficientStockError, _out_of_stock)
    app.add_exception_handler(OrderNotFoundError, _not_found)
    app.add_exception_handler(InvalidStatusTransition, _bad_transition)
    app.add_exception_handler(WebhookSignatureError, _bad_signature)
    app.add_exception_handler(OrderProcessingError, _processing_failed)
    app.add_exception_handler(Exception, _unexpected)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = bind_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.get("/")
    def root():
        """Liveness endpoint."""
        return {"message": "Order pipeline is running"}

    # Validates, persists and announces a new order.
    @app.post("/api/v1/orders")
    def create_order(
        request: Request,
        payload: Dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
    ):
        order_request = validate_order(payload)
        order = OrderProcessor(db, services.settings, hooks=services.order_hooks()).process(order_request)
        return _body(request, {"success": True, "order": _order_summary(order)})

    # Retrieves a single order by its ID.
    @app.get("/api/v1/orders/{order_id}")
    def get_order(order_id: str, request: Request, db: Session = Depends(get_db)):
        order = (
            db.query(Order).options(selectinload(Order.items)).filter(Order.id == order_id).first()
        )
        if order is None:
            raise OrderNotFoundError(order_id)
        return _body(request, {"success": True, "order": _order_details(order)})

    # Admin-only: moves an order along its lifecycle and notifies the customer.
    @app.post("/api/v1/orders/{order_id}/status")
    def change_order_status(
        order_id: str,
        update: StatusUpdateRequest,
        request: Request,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
    ):
        _require_bearer(request, services.settings.admin_api_token)
        order = update_order_status(
            db, order_id, update.status, services.email_queue, services.settings, update.message
        )
        return _body(request, {"success": True, "order": _order_summary(order)})

    @app.post("/api/v1/webhooks/payments")
    def payment_webhook(
        request: Request,
        body: bytes = Depends(raw_body),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
    ):
        verify_signature(
            services.settings.payment_webhook_secret, body, request.headers.get(SIGNATURE_HEADER)
        )
        # The provider retries anything but a 2xx, so processing errors still answer 200.
        try:
            outcome = services.payment_webhook().handle(db, body)
        except Exception:
            db.rollback()
            logger.exception("Payment webhook processing failed")
            outcome = "error"
        return {"received": True, "status": outcome}

    @app.post("/api/v1/webhooks/email-events")
    def email_events_webhook(
        request: Request,
        body: bytes = Depends(raw_body),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
    ):
        verify_signature(
            services.settings.email_webhook_secret, body, request.headers.get(SIGNATURE_HEADER)
        )
        try:
            outcome = services.email_events().handle(db, body)
        except Exception:
            db.rollback()
            logger.exception("Email event webhook processing failed")
            outcome = "error"
        return {"received": True, "status": outcome}

    @app.get("/api/v1/health")
    def health(services: Services = Depends(get_services)):
        status = services.health_monitor().health_check()
        return JSONResponse(status.to_dict(), status_code=200 if status.healthy else 503)

    # Invoked by an external scheduler to drain the notification queues.
    @app.post("/api/v1/queue/process")
    def process_queue(
        request: Request,
        channel: str = Query("all", pattern="^(email|sms|all)$"),
        services: Services = Depends(get_services),
    ):
        _require_bearer(request, services.settings.queue_processor_token)
        correlation_id = request.state.correlation_id
        total = ProcessResult()
        channels = {}
        for processor in services.queue_processors(channel):
            result = processor.run(correlation_id)
            channels[processor.queue.channel] = result.to_dict()
            total.processed += result.processed
            total.successful += result.successful
            total.failed += result.failed
            total.retried += result.retried
            total.duration += result.duration
        return _body(request, {
            "success": True,
            "processed": total.processed,
            "successful": total.successful,
            "failed": total.failed,
            "retried": total.retried,
            "duration": total.duration,
            "channels": channels,
        })

    @app.post("/api/v1/queue/cleanup")
    def cleanup_queue(
        request: Request,
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
    ):
        _require_bearer(request, services.settings.queue_processor_token)
        deleted = {
            "email": services.email_queue.cleanup(db),
            "sms": services.sms_queue.cleanup(db),
        }
        reconciled = reconcile_orphaned_orders(db, services.settings.orphan_order_minutes)
        return _body(request, {"success": True, "deleted": deleted, "reconciledOrders": len(reconciled)})

    return app


app = create_app()
