# services/__init__.py
# ============================================================================
# BOOKING PAYMENT SERVICE — SERVICES MODULE
# ============================================================================
# Stripe gateway facade and the payment session state machine
# ============================================================================

from services.gateway_client import (
    GatewayClient,
    StripeConfig,
    SessionHandle,
    SessionView,
)

from services.session_manager import SessionManager

__all__ = [
    # Gateway
    "GatewayClient",
    "StripeConfig",
    "SessionHandle",
    "SessionView",
    # State machine
    "SessionManager",
]
