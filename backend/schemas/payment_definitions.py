# schemas/payment_definitions.py
# ============================================================================
# BOOKING PAYMENT SERVICE — PAYMENT RECORD + WIRE SCHEMAS
# ============================================================================
# Purpose: Type-safe payment record and the request/response carriers
# exchanged with the upstream booking service.
#
# - Payment: one row per booking-payment attempt (snake_case, internal)
# - CheckoutSessionRequest / CheckoutSessionResponse / PaymentResponse:
#   camelCase on the wire, populate-by-name in code
# ============================================================================

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


GATEWAY_RESPONSE_MAX_LENGTH = 1000
HOSTED_CHECKOUT = "hosted_checkout"
CENTS = Decimal("0.01")


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Only these moves are legal; COMPLETED and FAILED are terminal.
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def to_minor_units(amount: Decimal) -> int:
    """Convert a display-currency amount to integer minor units, half-up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ============================================================================
# SECTION 2: PAYMENT RECORD
# ============================================================================

class Payment(BaseModel):
    """A single booking-payment attempt as persisted in the `payments` table."""
    model_config = ConfigDict(validate_assignment=True)

    id: Optional[int] = None
    booking_id: int
    user_id: int
    amount: Decimal
    currency: Optional[str] = None
    payment_method: str = HOSTED_CHECKOUT
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_response: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return Decimal(v).quantize(CENTS, rounding=ROUND_HALF_UP)

    @field_validator("gateway_response")
    @classmethod
    def truncate_gateway_response(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > GATEWAY_RESPONSE_MAX_LENGTH:
            return v[:GATEWAY_RESPONSE_MAX_LENGTH]
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Payment":
        """Build from a `payments` row (asyncpg.Record or dict)."""
        return cls(
            id=row["id"],
            booking_id=row["booking_id"],
            user_id=row["user_id"],
            amount=row["amount"],
            currency=row["currency"],
            payment_method=row["payment_method"],
            transaction_id=row["transaction_id"],
            payment_intent_id=row["payment_intent_id"],
            status=PaymentStatus(row["payment_status"]),
            gateway_response=row["payment_gateway_response"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            created_by=row["created_by"],
            updated_by=row["updated_by"],
        )


# ============================================================================
# SECTION 3: WIRE SCHEMAS
# ============================================================================

class WireModel(BaseModel):
    """camelCase on the wire, snake_case in code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutSessionRequest(WireModel):
    """Body of POST /checkout/create."""
    booking_id: int = Field(..., description="Booking this payment settles")
    user_id: int = Field(..., description="User paying for the booking")
    amount: Decimal = Field(..., decimal_places=2, description="Amount in display currency, e.g. 250.00")
    success_url: Optional[str] = Field(default=None, description="Overrides the configured success URL")
    cancel_url: Optional[str] = Field(default=None, description="Overrides the configured cancel URL")


class CheckoutSessionResponse(WireModel):
    session_id: str
    payment_url: str
    booking_id: int
    amount: float
    status: str
    message: str
    expires_at: Optional[int] = None


class PaymentResponse(WireModel):
    payment_id: Optional[int] = None
    booking_id: Optional[int] = None
    payment_status: str
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    message: str

    @classmethod
    def from_payment(cls, payment: Payment, message: str) -> "PaymentResponse":
        return cls(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            payment_status=payment.status.value,
            transaction_id=payment.transaction_id,
            amount=float(payment.amount),
            message=message,
        )

    @classmethod
    def error(cls, payment_status: str, message: str) -> "PaymentResponse":
        return cls(payment_status=payment_status, message=message)
