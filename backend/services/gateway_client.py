"""
Gateway Client - Stripe Hosted Checkout Facade
==============================================
Stateless adapter over Stripe Checkout Sessions.

Features:
- Create / retrieve (payment_intent expanded) / expire checkout sessions
- Blocking SDK calls run in a worker thread; the timeout lives on Stripe's
  HTTP client so a slow request is aborted, not abandoned
- Stripe's exception hierarchy is translated here into GatewayErrorKind;
  nothing above this module imports stripe errors

pip install stripe structlog pydantic
"""

import asyncio
import os
from typing import Any, Dict, Optional

import stripe
import structlog
from pydantic import BaseModel, Field

from exceptions import GatewayError, GatewayErrorKind

logger = structlog.get_logger().bind(component="gateway_client")


# =============================================================================
# CONFIGURATION
# =============================================================================

class StripeConfig:
    """Stripe configuration from environment"""

    SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL", "http://localhost:3000/payment/success?session_id={CHECKOUT_SESSION_ID}")
    CANCEL_URL = os.getenv("STRIPE_CANCEL_URL", "http://localhost:3000/payment/cancel")
    CHECKOUT_SESSION_EXPIRY_MINUTES = int(os.getenv("STRIPE_CHECKOUT_SESSION_EXPIRY_MINUTES", "30"))
    CURRENCY = os.getenv("STRIPE_CURRENCY", "inr")
    REQUEST_TIMEOUT_SECONDS = float(os.getenv("STRIPE_REQUEST_TIMEOUT_SECONDS", "10"))

    def validate(self):
        if not self.SECRET_KEY or not self.SECRET_KEY.strip():
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")


stripe_config = StripeConfig()

# Stripe rejects checkout expiries outside this window, measured from receipt
MIN_SESSION_EXPIRY_MINUTES = 30
MAX_SESSION_EXPIRY_MINUTES = 24 * 60

# Latency and clock skew eat into the floor between stamping and receipt
EXPIRY_FLOOR_MARGIN_MINUTES = 1

PRODUCT_NAME = "Booking Payment"


# =============================================================================
# GATEWAY MODELS
# =============================================================================

class SessionCreateRequest(BaseModel):
    booking_id: int
    user_id: int
    amount_minor: int = Field(gt=0)
    success_url: str
    cancel_url: str
    expires_at: int = Field(description="Absolute gateway-side expiry, seconds since epoch")
    metadata: Dict[str, str] = Field(default_factory=dict)


class SessionHandle(BaseModel):
    id: str
    url: str
    expires_at: Optional[int] = None


class PaymentIntentView(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    last_error: Optional[str] = None


class SessionView(BaseModel):
    id: str
    payment_status: Optional[str] = None
    status: Optional[str] = None
    expires_at: Optional[int] = None
    payment_intent: Optional[PaymentIntentView] = None
    payment_intent_id: Optional[str] = None


def _field(obj: Any, name: str) -> Any:
    """Read a field from a StripeObject, a plain dict, or any attribute bag."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _to_session_view(session: Any) -> SessionView:
    intent = _field(session, "payment_intent")
    intent_view = None
    intent_id = None

    if isinstance(intent, str):
        intent_id = intent
    elif intent is not None:
        intent_id = _field(intent, "id")
        intent_view = PaymentIntentView(
            id=intent_id,
            status=_field(intent, "status"),
            last_error=_field(_field(intent, "last_error"), "message"),
        )

    return SessionView(
        id=_field(session, "id"),
        payment_status=_field(session, "payment_status"),
        status=_field(session, "status"),
        expires_at=_field(session, "expires_at"),
        payment_intent=intent_view,
        payment_intent_id=intent_id,
    )


# =============================================================================
# ERROR TRANSLATION
# =============================================================================

_ERROR_KINDS = (
    (stripe.InvalidRequestError, GatewayErrorKind.INVALID_REQUEST),
    (stripe.AuthenticationError, GatewayErrorKind.AUTH_FAILED),
    (stripe.PermissionError, GatewayErrorKind.AUTH_FAILED),
    (stripe.RateLimitError, GatewayErrorKind.RATE_LIMITED),
    (stripe.APIConnectionError, GatewayErrorKind.UNAVAILABLE),
)


def translate_stripe_error(error: stripe.StripeError) -> GatewayError:
    kind = GatewayErrorKind.UNKNOWN
    for error_class, mapped in _ERROR_KINDS:
        if isinstance(error, error_class):
            kind = mapped
            break

    message = getattr(error, "user_message", None) or str(error) or type(error).__name__
    return GatewayError(kind, message, cause=error)


# =============================================================================
# HTTP CLIENT
# =============================================================================

def configure_http_client(config: StripeConfig = stripe_config, stripe_module=stripe):
    """
    Install an SDK HTTP client whose socket timeout is REQUEST_TIMEOUT_SECONDS.

    The request is aborted at the socket, so a timed-out create never
    completes after the caller has given up. Network retries stay off.
    """
    stripe_module.default_http_client = stripe_module.RequestsClient(timeout=config.REQUEST_TIMEOUT_SECONDS)
    stripe_module.max_network_retries = 0
    logger.debug("stripe_http_client_configured", timeout_seconds=config.REQUEST_TIMEOUT_SECONDS)


# =============================================================================
# CLIENT
# =============================================================================

class GatewayClient:
    """
    Stripe Checkout facade.

    Example:
        client = GatewayClient(stripe_config)
        handle = await client.create_session(request)
        view = await client.retrieve_session(handle.id)
    """

    def __init__(self, config: StripeConfig = stripe_config, stripe_client=stripe):
        self._config = config
        self._stripe = stripe_client
        configure_http_client(config, stripe_client)

    async def create_session(self, request: SessionCreateRequest) -> SessionHandle:
        session = await self._call(
            "create_session",
            self._stripe.checkout.Session.create,
            mode="payment",
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            expires_at=request.expires_at,
            line_items=[{
                "price_data": {
                    "currency": self._config.CURRENCY,
                    "unit_amount": request.amount_minor,
                    "product_data": {
                        "name": PRODUCT_NAME,
                        "description": f"Payment for booking ID: {request.booking_id}",
                    },
                },
                "quantity": 1,
            }],
            metadata=request.metadata,
            api_key=self._config.SECRET_KEY,
        )

        handle = SessionHandle(
            id=_field(session, "id"),
            url=_field(session, "url"),
            expires_at=_field(session, "expires_at"),
        )
        logger.info("checkout_session_created", session_id=handle.id, booking_id=request.booking_id)
        return handle

    async def retrieve_session(self, session_id: str, expand=("payment_intent",)) -> SessionView:
        session = await self._call(
            "retrieve_session",
            self._stripe.checkout.Session.retrieve,
            session_id,
            expand=list(expand),
            api_key=self._config.SECRET_KEY,
        )
        return _to_session_view(session)

    async def expire_session(self, session_id: str) -> str:
        """
        Expire an open session and return its final gateway status.

        A session that is already expired or complete is not an error: its
        status is returned so the caller can decide what to do.
        """
        try:
            session = await self._call(
                "expire_session",
                self._stripe.checkout.Session.expire,
                session_id,
                api_key=self._config.SECRET_KEY,
            )
            return _field(session, "status") or "expired"
        except GatewayError as e:
            if e.kind != GatewayErrorKind.INVALID_REQUEST:
                raise

            view = await self.retrieve_session(session_id, expand=())
            if view.status in ("expired", "complete"):
                logger.info("checkout_session_already_closed", session_id=session_id, status=view.status)
                return view.status
            raise

    async def _call(self, operation: str, fn, *args, **kwargs):
        # Runs to completion; a slow request fails inside the SDK as APIConnectionError
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            error = translate_stripe_error(e)
            logger.warning(
                "gateway_error",
                operation=operation,
                kind=error.kind.value,
                error_type=type(e).__name__,
                error=error.message,
            )
            raise error from e
