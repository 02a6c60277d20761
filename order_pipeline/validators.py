import math
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import PaymentMethod

# Monetary fields must agree within one cent.
AMOUNT_TOLERANCE = 0.01

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DOMESTIC_COUNTRY_CODE = "1"


def normalize_phone(phone: str) -> str:
    """Reduce a phone number to 11 digits with the domestic country code."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10:
        return DOMESTIC_COUNTRY_CODE + digits
    if len(digits) == 11 and digits.startswith(DOMESTIC_COUNTRY_CODE):
        return digits
    raise ValueError("Invalid phone number format")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def _exceeds_tolerance(a: float, b: float) -> bool:
    if not (math.isfinite(a) and math.isfinite(b)):
        return True
    # Rounded so float noise on an exact one-cent gap does not count.
    return round(abs(a - b), 6) > AMOUNT_TOLERANCE


# --- Request Models ---

class DeliveryAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    street: str = Field(..., min_length=1, max_length=200)
    apartment: Optional[str] = Field(None, max_length=50)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field("MN", min_length=2, max_length=2)
    zipcode: str = Field(..., pattern=r"^\d{5}$")
    instructions: Optional[str] = Field(None, max_length=500)

    @field_validator("apartment", "instructions")
    @classmethod
    def _blank_to_none(cls, value):
        return value or None

    @field_validator("state")
    @classmethod
    def _upper_state(cls, value: str) -> str:
        return value.upper()


class OrderItemRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, allow_inf_nan=False)

    product_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., gt=0)
    price: float = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=200)
    weight: Optional[float] = Field(None, gt=0)


class CreateOrderRequest(BaseModel):
    """A checkout submission that passed structural and business validation."""

    model_config = ConfigDict(str_strip_whitespace=True, allow_inf_nan=False)

    customer_name: str = Field(..., min_length=1, max_length=100)
    customer_email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN.pattern)
    customer_phone: str
    delivery_first_name: str = Field(..., min_length=1, max_length=50)
    delivery_last_name: str = Field(..., min_length=1, max_length=50)
    delivery_address: DeliveryAddress
    items: List[OrderItemRequest] = Field(..., min_length=1)
    subtotal: float = Field(..., gt=0)
    tax: float = Field(..., ge=0)
    delivery_fee: float = Field(..., ge=0)
    total: float = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    user_id: Optional[str] = Field(None, max_length=36)

    @field_validator("customer_phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return normalize_phone(value)

    @property
    def items_total(self) -> float:
        return sum(item.price * item.quantity for item in self.items)


def _issues_from(exc: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {"path": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


def validate_order(raw: Any) -> CreateOrderRequest:
    """
    Parse and check an order submission.

    Structural problems and amount mismatches both raise ``ValidationError``
    with a list of ``{"path", "message"}`` issues. Amounts are only compared
    once the structure is valid. No side effects.
    """
    try:
        request = CreateOrderRequest.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", _issues_from(exc)) from None

    issues = []
    computed_total = request.subtotal + request.tax + request.delivery_fee
    if _exceeds_tolerance(computed_total, request.total):
        issues.append({
            "path": "total",
            "message": "Total amount does not match sum of subtotal, tax, and delivery fee",
        })
    if _exceeds_tolerance(request.items_total, request.subtotal):
        issues.append({
            "path": "subtotal",
            "message": "Subtotal does not match sum of item prices",
        })
    if issues:
        raise ValidationError("Order amounts are inconsistent", issues)

    return request
