# schemas/__init__.py
from schemas.payment_definitions import (
    Payment,
    PaymentStatus,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PaymentResponse,
)

__all__ = [
    "Payment",
    "PaymentStatus",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "PaymentResponse",
]
