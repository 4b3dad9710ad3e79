"""
Unit Tests for the Stripe Gateway Client

Tests request shaping, response parsing, Stripe error translation,
timeouts and idempotent expiry, against a module-shaped fake of stripe.
"""

import asyncio
import time

import pytest
import stripe

from conftest import make_fake_stripe
from exceptions import GatewayError, GatewayErrorKind
from services.gateway_client import (
    GatewayClient,
    SessionCreateRequest,
    StripeConfig,
    translate_stripe_error,
)


def create_request(**overrides):
    values = dict(
        booking_id=42,
        user_id=7,
        amount_minor=25000,
        success_url="https://shop.example/success",
        cancel_url="https://shop.example/cancel",
        expires_at=1700001800,
        metadata={"bookingId": "42", "userId": "7"},
    )
    values.update(overrides)
    return SessionCreateRequest(**values)


class TestCreateSession:
    """Test checkout session creation"""

    def test_builds_single_line_item(self, stripe_settings):
        fake = make_fake_stripe(create={"id": "cs_A", "url": "https://pay/cs_A", "expires_at": 1700000000})
        client = GatewayClient(stripe_settings, stripe_client=fake)

        handle = asyncio.run(client.create_session(create_request()))

        assert handle.id == "cs_A"
        assert handle.url == "https://pay/cs_A"
        assert handle.expires_at == 1700000000

        name, _, params = fake.calls[0]
        assert name == "create"
        assert params["mode"] == "payment"
        assert params["expires_at"] == 1700001800
        assert params["metadata"] == {"bookingId": "42", "userId": "7"}
        assert params["api_key"] == "sk_test_123"
        assert params["success_url"] == "https://shop.example/success"

        (item,) = params["line_items"]
        assert item["quantity"] == 1
        assert item["price_data"]["unit_amount"] == 25000
        assert item["price_data"]["currency"] == "inr"
        assert item["price_data"]["product_data"] == {
            "name": "Booking Payment",
            "description": "Payment for booking ID: 42",
        }

    def test_reads_attribute_style_objects(self, stripe_settings):
        class StripeLike:
            id = "cs_B"
            url = "https://pay/cs_B"
            expires_at = 1

        client = GatewayClient(stripe_settings, stripe_client=make_fake_stripe(create=StripeLike()))

        assert asyncio.run(client.create_session(create_request())).id == "cs_B"

    def test_invalid_request_translated(self, stripe_settings):
        error = stripe.InvalidRequestError("Amount must be at least 50", "unit_amount")
        client = GatewayClient(stripe_settings, stripe_client=make_fake_stripe(create=error))

        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(client.create_session(create_request()))

        assert exc_info.value.kind == GatewayErrorKind.INVALID_REQUEST
        assert exc_info.value.message == "Amount must be at least 50"
        assert exc_info.value.http_status == 400

    def test_sdk_timeout_is_unavailable(self, stripe_settings):
        error = stripe.APIConnectionError("Request timed out")
        client = GatewayClient(stripe_settings, stripe_client=make_fake_stripe(create=error))

        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(client.create_session(create_request()))

        assert exc_info.value.kind == GatewayErrorKind.UNAVAILABLE
        assert exc_info.value.http_status == 500

    def test_slow_create_is_awaited_not_abandoned(self, stripe_settings):
        """A session the gateway creates is always handed back to the caller"""
        stripe_settings.REQUEST_TIMEOUT_SECONDS = 0.05

        def slow_create(**kwargs):
            time.sleep(0.2)
            return {"id": "cs_late", "url": "https://pay/cs_late"}

        fake = make_fake_stripe(create=slow_create)
        client = GatewayClient(stripe_settings, stripe_client=fake)

        handle = asyncio.run(client.create_session(create_request()))

        assert handle.id == "cs_late"
        assert [name for name, _, _ in fake.calls] == ["create"]


class TestHttpClient:
    """Test the SDK-level request timeout"""

    def test_timeout_installed_on_sdk_client(self, stripe_settings):
        stripe_settings.REQUEST_TIMEOUT_SECONDS = 3.5
        fake = make_fake_stripe()

        GatewayClient(stripe_settings, stripe_client=fake)

        assert fake.default_http_client.timeout == 3.5
        assert fake.max_network_retries == 0

    def test_real_sdk_exposes_requests_client(self):
        assert hasattr(stripe, "RequestsClient")


class TestRetrieveSession:
    """Test session retrieval and parsing"""

    def test_expanded_payment_intent(self, stripe_settings):
        fake = make_fake_stripe(retrieve={
            "id": "cs_A",
            "payment_status": "unpaid",
            "status": "open",
            "expires_at": 1700000000,
            "payment_intent": {
                "id": "pi_X",
                "status": "requires_payment_method",
                "last_error": {"message": "card_declined"},
            },
        })
        client = GatewayClient(stripe_settings, stripe_client=fake)

        view = asyncio.run(client.retrieve_session("cs_A"))

        assert view.payment_status == "unpaid"
        assert view.status == "open"
        assert view.payment_intent_id == "pi_X"
        assert view.payment_intent.status == "requires_payment_method"
        assert view.payment_intent.last_error == "card_declined"

        name, args, params = fake.calls[0]
        assert args == ("cs_A",)
        assert params["expand"] == ["payment_intent"]

    def test_unexpanded_payment_intent_id(self, stripe_settings):
        fake = make_fake_stripe(retrieve={
            "id": "cs_A", "payment_status": "paid", "status": "complete", "payment_intent": "pi_Y",
        })
        view = asyncio.run(GatewayClient(stripe_settings, stripe_client=fake).retrieve_session("cs_A"))

        assert view.payment_intent is None
        assert view.payment_intent_id == "pi_Y"

    def test_no_payment_intent(self, stripe_settings):
        fake = make_fake_stripe(retrieve={"id": "cs_A", "payment_status": None, "status": "expired"})
        view = asyncio.run(GatewayClient(stripe_settings, stripe_client=fake).retrieve_session("cs_A"))

        assert view.payment_intent is None
        assert view.payment_intent_id is None
        assert view.status == "expired"


class TestExpireSession:
    """Test idempotent expiry"""

    def test_open_session_expired(self, stripe_settings):
        fake = make_fake_stripe(expire={"id": "cs_A", "status": "expired"})
        client = GatewayClient(stripe_settings, stripe_client=fake)

        assert asyncio.run(client.expire_session("cs_A")) == "expired"

    @pytest.mark.parametrize("final_status", ["expired", "complete"])
    def test_already_closed_session_is_not_an_error(self, stripe_settings, final_status):
        fake = make_fake_stripe(
            expire=stripe.InvalidRequestError("Only open sessions can be expired", None),
            retrieve={"id": "cs_A", "status": final_status, "payment_status": "unpaid"},
        )
        client = GatewayClient(stripe_settings, stripe_client=fake)

        assert asyncio.run(client.expire_session("cs_A")) == final_status
        assert [name for name, _, _ in fake.calls] == ["expire", "retrieve"]

    def test_invalid_request_on_open_session_propagates(self, stripe_settings):
        fake = make_fake_stripe(
            expire=stripe.InvalidRequestError("No such checkout.session", None),
            retrieve={"id": "cs_A", "status": "open"},
        )
        client = GatewayClient(stripe_settings, stripe_client=fake)

        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(client.expire_session("cs_A"))
        assert exc_info.value.kind == GatewayErrorKind.INVALID_REQUEST

    def test_network_failure_surfaces_unavailable(self, stripe_settings):
        fake = make_fake_stripe(expire=stripe.APIConnectionError("connection reset"))
        client = GatewayClient(stripe_settings, stripe_client=fake)

        with pytest.raises(GatewayError) as exc_info:
            asyncio.run(client.expire_session("cs_A"))
        assert exc_info.value.kind == GatewayErrorKind.UNAVAILABLE


class TestErrorTranslation:
    """Test Stripe exception -> GatewayErrorKind"""

    @pytest.mark.parametrize("error,kind,status", [
        (stripe.InvalidRequestError("bad", "param"), GatewayErrorKind.INVALID_REQUEST, 400),
        (stripe.AuthenticationError("bad key"), GatewayErrorKind.AUTH_FAILED, 500),
        (stripe.PermissionError("forbidden"), GatewayErrorKind.AUTH_FAILED, 500),
        (stripe.RateLimitError("slow down"), GatewayErrorKind.RATE_LIMITED, 400),
        (stripe.APIConnectionError("down"), GatewayErrorKind.UNAVAILABLE, 500),
        (stripe.APIError("server error"), GatewayErrorKind.UNKNOWN, 500),
    ])
    def test_mapping(self, error, kind, status):
        translated = translate_stripe_error(error)

        assert translated.kind == kind
        assert translated.http_status == status
        assert translated.cause is error


class TestStripeConfig:
    """Test startup validation"""

    def test_missing_secret_key(self):
        settings = StripeConfig()
        settings.SECRET_KEY = " "

        with pytest.raises(RuntimeError):
            settings.validate()

    def test_present_secret_key(self, stripe_settings):
        stripe_settings.validate()
