# api/payment_routes.py
# ============================================================================
# BOOKING PAYMENT SERVICE — INTERNAL PAYMENT ENDPOINTS
# ============================================================================
# Thin routing layer: no business logic, errors are rendered by the
# exception handlers registered in api/server.py
# ============================================================================

from fastapi import APIRouter, Depends, Request

from api.security import require_service_account
from schemas.payment_definitions import CheckoutSessionRequest, CheckoutSessionResponse, PaymentResponse
from services.session_manager import SessionManager

router = APIRouter(
    prefix="/api/v1/internal/payments",
    tags=["payments"],
    dependencies=[Depends(require_service_account)],
)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


@router.post("/checkout/create", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    manager: SessionManager = Depends(get_session_manager),
):
    """Open a hosted checkout session for a booking."""
    return await manager.create_checkout_session(body)


@router.get("/checkout/verify/{session_id}", response_model=PaymentResponse)
async def verify_checkout_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    """Pull the session outcome from the gateway and settle the local record."""
    return await manager.verify_checkout_session(session_id)


@router.get("/status/{transaction_id}", response_model=PaymentResponse)
async def get_payment_status(
    transaction_id: str,
    manager: SessionManager = Depends(get_session_manager),
):
    return await manager.get_payment_status(transaction_id)
