"""
Payment Service Errors
======================
Internal error kinds raised by the session manager and the store.

Each error carries the HTTP status and the `paymentStatus` label the
boundary layer renders; the gateway error kinds are the only vocabulary
the rest of the service knows about Stripe failures.
"""

from enum import Enum
from typing import Optional


# =============================================================================
# SERVICE ERRORS
# =============================================================================

class PaymentServiceError(Exception):
    """Base class for every error the HTTP layer knows how to render"""

    status_code: int = 500
    payment_status: str = "ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPaymentRequestError(PaymentServiceError):
    status_code = 400
    payment_status = "INVALID_REQUEST"


class PaymentNotFoundError(PaymentServiceError):
    status_code = 404
    payment_status = "NOT_FOUND"


class PaymentProcessingError(PaymentServiceError):
    """Gateway or persistence failure surfaced to the caller as FAILED"""

    payment_status = "FAILED"

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class DuplicateTransactionError(PaymentServiceError):
    """A second row tried to claim an existing gateway session id"""

    status_code = 500
    payment_status = "FAILED"


# =============================================================================
# GATEWAY ERRORS
# =============================================================================

class GatewayErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    AUTH_FAILED = "auth_failed"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


# Kinds that are the caller's fault render as 400, the rest as 500
CLIENT_SIDE_KINDS = frozenset({GatewayErrorKind.INVALID_REQUEST, GatewayErrorKind.RATE_LIMITED})


class GatewayError(Exception):
    """Translated Stripe failure; raised only by the gateway client"""

    def __init__(self, kind: GatewayErrorKind, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause

    @property
    def http_status(self) -> int:
        return 400 if self.kind in CLIENT_SIDE_KINDS else 500

    def __repr__(self) -> str:
        return f"GatewayError(kind={self.kind.value!r}, message={self.message!r})"
