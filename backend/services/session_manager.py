"""
Session Manager - Payment Lifecycle State Machine
=================================================
Owns every transition of a `Payment` record:

    PENDING --verify(paid)-----------> COMPLETED   (terminal)
    PENDING --verify(expired)--------> FAILED      (terminal)
    PENDING --reaper(stale + expire)-> FAILED      (terminal)

Features:
- Gateway session is created before the local row; a failed insert after a
  successful create is logged as an orphan gateway session
- Verify and reaper expiry serialize on the row lock of the store transaction
- One transition guard (`_apply_transition`) for all status changes
- Gateway failures surface as PaymentProcessingError with user-safe messages

pip install structlog pydantic
"""

from datetime import datetime, timedelta
from functools import wraps
from typing import Optional

import structlog

from exceptions import (
    GatewayError,
    GatewayErrorKind,
    InvalidPaymentRequestError,
    PaymentNotFoundError,
    PaymentProcessingError,
    PaymentServiceError,
)
from schemas.payment_definitions import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    Payment,
    PaymentResponse,
    PaymentStatus,
    can_transition,
    to_minor_units,
)
from services.gateway_client import (
    EXPIRY_FLOOR_MARGIN_MINUTES,
    MAX_SESSION_EXPIRY_MINUTES,
    MIN_SESSION_EXPIRY_MINUTES,
    GatewayClient,
    SessionCreateRequest,
    SessionView,
    StripeConfig,
    stripe_config,
)
from storage.payment_store import Clock, IPaymentStore, utc_now

logger = structlog.get_logger().bind(component="session_manager")


# =============================================================================
# MESSAGES
# =============================================================================

CREATED_MESSAGE = "Checkout session created. Go to the provided paymentUrl to complete payment."
VERIFIED_MESSAGE = "Payment verification successful"
EXPIRED_MESSAGE = "Checkout session expired. Please create a new payment."
PENDING_MESSAGE = "Payment is Pending. Please try again."
STATUS_MESSAGE = "Payment status retrieved successfully"
UNEXPECTED_MESSAGE = "An unexpected error occurred. Please try again later."

AUTH_FAILED_MESSAGE = "Payment service authentication error. Please contact support."
RATE_LIMITED_MESSAGE = "Too many requests. Please try again in a few moments."
CREATE_FAILED_MESSAGE = "Failed to create checkout session. Please try again."
VERIFY_FAILED_MESSAGE = "Failed to verify checkout session. Please try again."


def map_gateway_payment_status(payment_status: Optional[str]) -> PaymentStatus:
    """Translate Stripe's session.payment_status into a local status."""
    if payment_status is None:
        logger.warning("Checkout session has no payment_status, treating as pending")
        return PaymentStatus.PENDING

    value = payment_status.lower()
    if value in ("paid", "no_payment_required"):
        return PaymentStatus.COMPLETED
    if value == "unpaid":
        return PaymentStatus.PENDING

    logger.warning("Unknown checkout session payment_status, treating as pending", payment_status=payment_status)
    return PaymentStatus.PENDING


def _wrap_gateway_error(error: GatewayError, invalid_prefix: str, fallback: str) -> PaymentProcessingError:
    if error.kind == GatewayErrorKind.INVALID_REQUEST:
        message = f"{invalid_prefix}: {error.message}"
    elif error.kind == GatewayErrorKind.AUTH_FAILED:
        message = AUTH_FAILED_MESSAGE
    elif error.kind == GatewayErrorKind.RATE_LIMITED:
        message = RATE_LIMITED_MESSAGE
    else:
        message = fallback
    return PaymentProcessingError(message, status_code=error.http_status)


def surface_unexpected(operation: str):
    """Let service errors through; turn anything else into a generic 500."""
    def decorator(fn):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except PaymentServiceError:
                raise
            except Exception as e:
                logger.exception("Unexpected error in payment operation", operation=operation, error=str(e))
                raise PaymentProcessingError(UNEXPECTED_MESSAGE, status_code=500) from e
        return wrapper
    return decorator


def _pick_url(override: Optional[str], default: str) -> str:
    if override is not None and override.strip():
        return override
    return default


# =============================================================================
# SESSION MANAGER
# =============================================================================

class SessionManager:
    """
    Hosted-checkout payment lifecycle.

    Example:
        manager = SessionManager(store, GatewayClient())
        created = await manager.create_checkout_session(request)
        # user pays at created.payment_url
        result = await manager.verify_checkout_session(created.session_id)
    """

    def __init__(
        self,
        store: IPaymentStore,
        gateway: GatewayClient,
        config: StripeConfig = stripe_config,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config
        self._clock = clock

    @property
    def expiry_minutes(self) -> int:
        return self.config.CHECKOUT_SESSION_EXPIRY_MINUTES

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # CREATE
    # =========================================================================

    @surface_unexpected("create_checkout_session")
    async def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSessionResponse:
        log = logger.bind(booking_id=request.booking_id, user_id=request.user_id)

        if request.amount is None or to_minor_units(request.amount) <= 0:
            log.warning("Rejected checkout with non-positive amount", amount=str(request.amount))
            raise InvalidPaymentRequestError("Amount must be greater than zero")

        amount_minor = to_minor_units(request.amount)
        gateway_request = SessionCreateRequest(
            booking_id=request.booking_id,
            user_id=request.user_id,
            amount_minor=amount_minor,
            success_url=_pick_url(request.success_url, self.config.SUCCESS_URL),
            cancel_url=_pick_url(request.cancel_url, self.config.CANCEL_URL),
            expires_at=self._gateway_expiry(),
            metadata={
                "bookingId": str(request.booking_id),
                "userId": str(request.user_id),
            },
        )

        try:
            handle = await self.gateway.create_session(gateway_request)
        except GatewayError as e:
            log.error("Checkout session creation failed", kind=e.kind.value, error=e.message)
            raise _wrap_gateway_error(e, "Invalid payment request", CREATE_FAILED_MESSAGE) from e

        payment = Payment(
            booking_id=request.booking_id,
            user_id=request.user_id,
            amount=request.amount,
            currency=self.config.CURRENCY,
            transaction_id=handle.id,
            status=PaymentStatus.PENDING,
            gateway_response=f"Checkout Session created: {handle.id}",
        )

        try:
            async with self.store.transaction() as tx:
                stored = await tx.insert(payment)
        except Exception as e:
            # Gateway session exists with no local row; nothing will reap it
            log.error("orphan_gateway_session", session_id=handle.id, error=str(e), error_type=type(e).__name__)
            raise PaymentProcessingError(CREATE_FAILED_MESSAGE, status_code=500) from e

        log.info("checkout_created", session_id=handle.id, payment_id=stored.id, amount_minor=amount_minor)

        return CheckoutSessionResponse(
            session_id=handle.id,
            payment_url=handle.url,
            booking_id=request.booking_id,
            amount=float(stored.amount),
            status="pending",
            message=CREATED_MESSAGE,
            expires_at=handle.expires_at,
        )

    def _gateway_expiry(self) -> int:
        floor = MIN_SESSION_EXPIRY_MINUTES + EXPIRY_FLOOR_MARGIN_MINUTES
        minutes = min(max(self.expiry_minutes, floor), MAX_SESSION_EXPIRY_MINUTES)
        return int((self.now() + timedelta(minutes=minutes)).timestamp())

    # =========================================================================
    # VERIFY
    # =========================================================================

    @surface_unexpected("verify_checkout_session")
    async def verify_checkout_session(self, session_id: str) -> PaymentResponse:
        log = logger.bind(session_id=session_id)

        try:
            session = await self.gateway.retrieve_session(session_id, expand=("payment_intent",))
        except GatewayError as e:
            log.error("Checkout session verification failed", kind=e.kind.value, error=e.message)
            raise _wrap_gateway_error(e, "Invalid session ID", VERIFY_FAILED_MESSAGE) from e

        log.info(
            "Checkout session retrieved",
            payment_status=session.payment_status,
            status=session.status,
            payment_intent_id=session.payment_intent_id,
        )

        async with self.store.transaction() as tx:
            payment = await tx.find_by_transaction_id(session_id, for_update=True)
            if payment is None:
                raise PaymentNotFoundError(f"Payment not found for session ID: {session_id}")

            if (session.status or "").lower() == "expired":
                log.warning("Checkout session expired")
                if self._apply_transition(payment, PaymentStatus.FAILED):
                    payment.gateway_response = f"Session expired: {session.id}"
                    payment = await tx.update(payment)
                if payment.status == PaymentStatus.COMPLETED:
                    return PaymentResponse.from_payment(payment, VERIFIED_MESSAGE)
                return PaymentResponse.from_payment(payment, EXPIRED_MESSAGE)

            intent = session.payment_intent
            if intent is not None and intent.status == "requires_payment_method":
                log.warning("Payment attempt failed, session still open", reason=intent.last_error or "Unknown error")

            new_status = map_gateway_payment_status(session.payment_status)

            if new_status == PaymentStatus.COMPLETED:
                if payment.status == PaymentStatus.COMPLETED:
                    log.info("Payment already completed", payment_id=payment.id)
                    return PaymentResponse.from_payment(payment, VERIFIED_MESSAGE)

                if self._apply_transition(payment, PaymentStatus.COMPLETED):
                    payment.payment_intent_id = session.payment_intent_id
                    payment.gateway_response = self._completion_summary(session)
                    payment = await tx.update(payment)
                    log.info("payment_completed", payment_id=payment.id, payment_intent_id=payment.payment_intent_id)
                    return PaymentResponse.from_payment(payment, VERIFIED_MESSAGE)

            return PaymentResponse.from_payment(payment, PENDING_MESSAGE)

    @staticmethod
    def _completion_summary(session: SessionView) -> str:
        summary = f"Session: {session.id}, Status: {session.payment_status}, PaymentIntent: {session.payment_intent_id}"
        if session.payment_intent is not None and session.payment_intent.last_error:
            summary += f", Last Error: {session.payment_intent.last_error}"
        return summary

    # =========================================================================
    # STATUS
    # =========================================================================

    @surface_unexpected("get_payment_status")
    async def get_payment_status(self, transaction_id: str) -> PaymentResponse:
        payment = await self.store.find_by_transaction_id(transaction_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found with transaction ID: {transaction_id}")
        return PaymentResponse.from_payment(payment, STATUS_MESSAGE)

    # =========================================================================
    # EXPIRY (driven by the reaper)
    # =========================================================================

    def is_session_stale(self, payment: Payment, now: Optional[datetime] = None) -> bool:
        if payment.created_at is None:
            return False
        now = now or self.now()
        return now - payment.created_at >= timedelta(minutes=self.expiry_minutes)

    async def expire_stale_payment(self, payment: Payment) -> bool:
        """
        Expire the gateway session, then mark the row FAILED.

        Returns True when the row was transitioned. A gateway failure leaves
        the row PENDING for the next pass; a row settled concurrently by
        verify is left untouched.
        """
        log = logger.bind(payment_id=payment.id, session_id=payment.transaction_id)

        current = await self.store.find_by_id(payment.id)
        if current is None or current.status != PaymentStatus.PENDING:
            log.info("Skipping expiry, payment no longer pending")
            return False

        try:
            final_status = await self.gateway.expire_session(current.transaction_id)
        except GatewayError as e:
            log.warning("Gateway expiry failed, will retry next pass", kind=e.kind.value, error=e.message)
            return False

        if final_status == "complete":
            log.info("Gateway session already completed, leaving for verify")
            return False

        async with self.store.transaction() as tx:
            locked = await tx.find_by_id(payment.id, for_update=True)
            if locked is None or locked.status != PaymentStatus.PENDING:
                log.info("Payment settled concurrently, expiry aborted", status=locked.status.value if locked else None)
                return False

            self._apply_transition(locked, PaymentStatus.FAILED)
            locked.gateway_response = f"Payment session expired after {self.expiry_minutes} minutes"
            await tx.update(locked)

        log.info("payment_expired", expiry_minutes=self.expiry_minutes)
        return True

    # =========================================================================
    # TRANSITION GUARD
    # =========================================================================

    @staticmethod
    def _apply_transition(payment: Payment, new_status: PaymentStatus) -> bool:
        """Move `payment` to `new_status` in place if allowed; otherwise leave it."""
        if payment.status == new_status:
            return False

        if not can_transition(payment.status, new_status):
            log_method = logger.error if payment.status == PaymentStatus.COMPLETED else logger.warning
            log_method(
                "Blocked illegal payment transition",
                payment_id=payment.id,
                current=payment.status.value,
                requested=new_status.value,
            )
            return False

        logger.info(
            "payment_transition",
            payment_id=payment.id,
            previous=payment.status.value,
            new=new_status.value,
        )
        payment.status = new_status
        return True
