"""
Pytest Configuration for Backend Tests

Common fixtures and fakes for the payment service: a controllable clock,
a scripted gateway, an in-memory store and a session manager wired to them.
"""

import sys
from pathlib import Path

# Add backend root to path
backend_root = Path(__file__).parent.parent
sys.path.insert(0, str(backend_root))

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from schemas.payment_definitions import Payment, PaymentStatus
from services.gateway_client import (
    PaymentIntentView,
    SessionHandle,
    SessionView,
    StripeConfig,
)
from services.session_manager import SessionManager
from storage.payment_store import InMemoryPaymentStore
from tasks.reaper import ReaperConfig


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


class FakeGateway:
    """
    Scripted stand-in for GatewayClient.

    Set `create_error` / `retrieve_error` / `expire_error` to a GatewayError
    to make the call fail; `sessions` maps session ids to the SessionView
    returned by retrieve_session.
    """

    def __init__(self):
        self.created = []
        self.retrieved = []
        self.expired = []
        self.sessions = {}
        self.next_id = "cs_A"
        self.expire_status = "expired"
        self.create_error = None
        self.retrieve_error = None
        self.expire_error = None
        self.on_expire = None

    async def create_session(self, request):
        self.created.append(request)
        if self.create_error is not None:
            raise self.create_error
        return SessionHandle(id=self.next_id, url=f"https://pay/{self.next_id}", expires_at=1700000000)

    async def retrieve_session(self, session_id, expand=("payment_intent",)):
        self.retrieved.append((session_id, tuple(expand)))
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return self.sessions[session_id]

    async def expire_session(self, session_id):
        self.expired.append(session_id)
        if self.on_expire is not None:
            await self.on_expire(session_id)
        if self.expire_error is not None:
            raise self.expire_error
        return self.expire_status


def session_view(session_id="cs_A", payment_status="unpaid", status="open",
                 intent_id=None, intent_status=None, last_error=None) -> SessionView:
    intent = None
    if intent_id is not None or intent_status is not None:
        intent = PaymentIntentView(id=intent_id, status=intent_status, last_error=last_error)
    return SessionView(
        id=session_id,
        payment_status=payment_status,
        status=status,
        expires_at=1700000000,
        payment_intent=intent,
        payment_intent_id=intent_id,
    )


class FakeHttpClient:
    """Records the timeout GatewayClient installs on the SDK"""

    def __init__(self, timeout=None):
        self.timeout = timeout


def make_fake_stripe(create=None, retrieve=None, expire=None):
    """Module-shaped stand-in exposing stripe.checkout.Session.*"""
    calls = []

    def recorder(name, behaviour):
        def call(*args, **kwargs):
            calls.append((name, args, kwargs))
            if isinstance(behaviour, Exception):
                raise behaviour
            if callable(behaviour):
                return behaviour(*args, **kwargs)
            return behaviour
        return call

    session = SimpleNamespace(
        create=recorder("create", create),
        retrieve=recorder("retrieve", retrieve),
        expire=recorder("expire", expire),
    )
    return SimpleNamespace(
        checkout=SimpleNamespace(Session=session),
        RequestsClient=FakeHttpClient,
        default_http_client=None,
        max_network_retries=2,
        calls=calls,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stripe_settings():
    settings = StripeConfig()
    settings.SECRET_KEY = "sk_test_123"
    settings.SUCCESS_URL = "https://shop.example/success"
    settings.CANCEL_URL = "https://shop.example/cancel"
    settings.CHECKOUT_SESSION_EXPIRY_MINUTES = 30
    settings.CURRENCY = "inr"
    settings.REQUEST_TIMEOUT_SECONDS = 2.0
    return settings


@pytest.fixture
def reaper_settings():
    settings = ReaperConfig()
    settings.ENABLED = False
    settings.INTERVAL_SECONDS = 60.0
    return settings


@pytest.fixture
def store(clock):
    return InMemoryPaymentStore(clock=clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager(store, gateway, stripe_settings, clock):
    return SessionManager(store, gateway, config=stripe_settings, clock=clock)


@pytest.fixture
def pending_payment():
    """Unsaved PENDING payment for booking 42"""
    return Payment(
        booking_id=42,
        user_id=7,
        amount=Decimal("250.00"),
        currency="inr",
        transaction_id="cs_A",
        status=PaymentStatus.PENDING,
        gateway_response="Checkout Session created: cs_A",
    )
