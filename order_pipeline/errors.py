from typing import Dict, List, Optional


class OrderPipelineError(Exception):
    """Base class for errors raised by the order pipeline."""


class ValidationError(OrderPipelineError):
    """Malformed or business-rule-violating order input. Never retried."""

    def __init__(self, message: str, issues: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.message = message
        self.issues = issues or []


class OrderProcessingError(OrderPipelineError):
    """A storage failure while creating an order or its items."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class InsufficientStockError(OrderPipelineError):
    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class OrderNotFoundError(OrderPipelineError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class InvalidStatusTransition(OrderPipelineError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


class InvalidJobTransition(OrderPipelineError):
    def __init__(self, job_id, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class DispatchError(OrderPipelineError):
    """A queued job that can never be delivered (missing order, bad payload)."""


# --- Provider errors ---

class ProviderError(OrderPipelineError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limiting, network failures, timeouts and 5xx responses."""


class PermanentProviderError(ProviderError):
    """4xx responses and malformed requests; retrying cannot help."""


class CircuitOpenError(OrderPipelineError):
    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name
        self.retry_after = retry_after


class WebhookSignatureError(OrderPipelineError):
    pass
