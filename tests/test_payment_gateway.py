"""
Tests for the payment gateway implementations and factory.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from app.core import circuit_breaker
from app.exceptions import PaymentGatewayError, PaymentGatewayRejectedError
from app.services.payment_gateway import get_payment_gateway, get_supported_gateways
from app.services.payment_gateway.factory import UnsupportedGatewayError
from app.services.payment_gateway.mock_gateway import MockGateway
from app.services.payment_gateway.stripe_gateway import StripeGateway, from_minor_units, to_minor_units


@pytest.fixture(autouse=True)
def clean_breakers():
    circuit_breaker._breakers.clear()
    yield
    circuit_breaker._breakers.clear()


def intent_payload(**overrides):
    payload = {
        "id": "pi_123",
        "status": "requires_payment_method",
        "client_secret": "pi_123_secret_abc",
        "amount": 2999,
        "amount_received": 0,
        "currency": "usd",
        "metadata": {},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.v1.payment_intents.create_async = AsyncMock(return_value=intent_payload())
    client.v1.payment_intents.retrieve_async = AsyncMock(return_value=intent_payload())
    client.v1.payment_intents.cancel_async = AsyncMock(return_value=intent_payload(status="canceled"))
    client.v1.refunds.create_async = AsyncMock(
        return_value={"id": "re_1", "status": "succeeded", "amount": 750, "currency": "usd"}
    )
    return client


@pytest.fixture
def gateway(mock_client):
    return StripeGateway(secret_key="sk_test_123", client=mock_client)


class TestMinorUnits:
    def test_two_decimal_currency(self):
        assert to_minor_units(Decimal("29.99"), "usd") == 2999
        assert to_minor_units(Decimal("0.005"), "eur") == 1
        assert from_minor_units(2999, "usd") == Decimal("29.99")

    def test_zero_decimal_currency(self):
        assert to_minor_units(Decimal("3000"), "JPY") == 3000
        assert from_minor_units(3000, "jpy") == Decimal("3000")


class TestStripeGateway:
    @pytest.mark.asyncio
    async def test_create_payment_intent(self, gateway, mock_client):
        intent = await gateway.create_payment_intent(
            Decimal("29.99"), "USD", customer_id="cus_1", metadata={"business_id": "b1"}, idempotency_key="boost-intent-1"
        )

        params = mock_client.v1.payment_intents.create_async.call_args.args[0]
        assert params["amount"] == 2999
        assert params["currency"] == "usd"
        assert params["customer"] == "cus_1"
        assert params["metadata"] == {"business_id": "b1"}
        assert params["automatic_payment_methods"] == {"enabled": True}
        assert mock_client.v1.payment_intents.create_async.call_args.kwargs["options"] == {"idempotency_key": "boost-intent-1"}

        assert intent["id"] == "pi_123"
        assert intent["client_secret"] == "pi_123_secret_abc"
        assert intent["amount"] == Decimal("29.99")

    @pytest.mark.asyncio
    async def test_partial_refund_converts_amount(self, gateway, mock_client):
        mock_client.v1.payment_intents.retrieve_async.return_value = intent_payload(status="succeeded", amount_received=2999)

        refund = await gateway.create_refund("pi_123", Decimal("7.50"), idempotency_key="boost-refund-s1")

        mock_client.v1.refunds.create_async.assert_awaited_once_with(
            {"payment_intent": "pi_123", "amount": 750},
            options={"idempotency_key": "boost-refund-s1"},
        )
        assert refund == {"id": "re_1", "status": "succeeded", "amount": Decimal("7.50"), "currency": "usd"}

    @pytest.mark.asyncio
    async def test_full_refund_skips_intent_lookup(self, gateway, mock_client):
        await gateway.create_refund("pi_123")

        mock_client.v1.payment_intents.retrieve_async.assert_not_awaited()
        assert mock_client.v1.refunds.create_async.call_args.args[0] == {"payment_intent": "pi_123"}

    @pytest.mark.asyncio
    async def test_declined_card_is_a_rejection(self, gateway, mock_client):
        mock_client.v1.payment_intents.retrieve_async.side_effect = stripe.CardError(
            "Your card was declined.", param=None, code="card_declined", http_status=402
        )

        for _ in range(10):
            with pytest.raises(PaymentGatewayRejectedError) as exc_info:
                await gateway.get_payment_intent("pi_123")

        assert "card_declined" in exc_info.value.message
        assert exc_info.value.status_code == 402
        # Business rejections never open the circuit
        assert gateway.circuit.is_closed

    @pytest.mark.asyncio
    async def test_invalid_refund_is_a_rejection(self, gateway, mock_client):
        mock_client.v1.refunds.create_async.side_effect = stripe.InvalidRequestError(
            "Charge has already been refunded.", param=None, code="charge_already_refunded", http_status=400
        )

        with pytest.raises(PaymentGatewayRejectedError, match="charge_already_refunded"):
            await gateway.create_refund("pi_123")

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_a_rejection(self, gateway, mock_client):
        mock_client.v1.payment_intents.retrieve_async.side_effect = stripe.RateLimitError("Too many requests", http_status=429)

        with pytest.raises(PaymentGatewayError) as exc_info:
            await gateway.get_payment_intent("pi_123")

        assert not isinstance(exc_info.value, PaymentGatewayRejectedError)
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_server_errors_open_the_circuit(self, gateway, mock_client):
        cancel = mock_client.v1.payment_intents.cancel_async
        cancel.side_effect = stripe.APIError("overloaded", http_status=503)

        for _ in range(gateway.circuit.failure_threshold):
            with pytest.raises(PaymentGatewayError):
                await gateway.cancel_payment_intent("pi_123")

        with pytest.raises(PaymentGatewayError) as exc_info:
            await gateway.cancel_payment_intent("pi_123")

        assert "temporarily unavailable" in exc_info.value.message
        assert cancel.await_count == gateway.circuit.failure_threshold

    @pytest.mark.asyncio
    async def test_connection_failure(self, gateway, mock_client):
        mock_client.v1.payment_intents.retrieve_async.side_effect = stripe.APIConnectionError("Network error: connection refused")

        with pytest.raises(PaymentGatewayError, match="connection failed") as exc_info:
            await gateway.get_payment_intent("pi_123")
        assert not isinstance(exc_info.value, PaymentGatewayRejectedError)


class TestMockGateway:
    @pytest.mark.asyncio
    async def test_intent_lifecycle(self):
        gateway = MockGateway(auto_succeed=False)
        intent = await gateway.create_payment_intent(Decimal("30.00"), "USD")

        assert intent["id"] == "pi_mock_000001"
        assert intent["status"] == "requires_payment_method"
        assert intent["currency"] == "usd"

        canceled = await gateway.cancel_payment_intent(intent["id"])
        assert canceled["status"] == "canceled"

    @pytest.mark.asyncio
    async def test_captured_intent_cannot_be_canceled(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(Decimal("30.00"), "usd")
        with pytest.raises(PaymentGatewayError):
            await gateway.cancel_payment_intent(intent["id"])

    @pytest.mark.asyncio
    async def test_refunds_are_idempotent(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(Decimal("30.00"), "usd")

        first = await gateway.create_refund(intent["id"], Decimal("10.00"), idempotency_key="k")
        again = await gateway.create_refund(intent["id"], Decimal("10.00"), idempotency_key="k")

        assert first == again
        assert gateway.intents[intent["id"]]["amount_refunded"] == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_refund_cannot_exceed_payment(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(Decimal("30.00"), "usd")
        await gateway.create_refund(intent["id"])
        with pytest.raises(PaymentGatewayError):
            await gateway.create_refund(intent["id"], Decimal("1.00"))

    @pytest.mark.asyncio
    async def test_injected_failure(self):
        gateway = MockGateway()
        gateway.fail_operations.add("get_payment_intent")
        with pytest.raises(PaymentGatewayError):
            await gateway.get_payment_intent("pi_mock_000001")

    @pytest.mark.asyncio
    async def test_definite_refusals_are_rejections(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(Decimal("30.00"), "usd")
        with pytest.raises(PaymentGatewayRejectedError):
            await gateway.cancel_payment_intent(intent["id"])

        gateway.reject_operations.add("create_refund")
        with pytest.raises(PaymentGatewayRejectedError):
            await gateway.create_refund(intent["id"])
        assert gateway.refunds == {}

    @pytest.mark.asyncio
    async def test_lost_reply_still_refunds(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(Decimal("30.00"), "usd")
        gateway.lost_reply_operations.add("create_refund")

        with pytest.raises(PaymentGatewayError) as exc_info:
            await gateway.create_refund(intent["id"], Decimal("10.00"), idempotency_key="k")

        assert not isinstance(exc_info.value, PaymentGatewayRejectedError)
        assert gateway.intents[intent["id"]]["amount_refunded"] == Decimal("10.00")
        assert "k" in gateway.refunds


class TestFactory:
    def test_mock(self):
        assert isinstance(get_payment_gateway("MOCK", {}), MockGateway)

    @pytest.mark.asyncio
    async def test_stripe(self):
        gateway = get_payment_gateway("stripe", {"secret_key": "sk_test_1", "api_base": "https://stripe.test"})
        assert isinstance(gateway, StripeGateway)
        assert gateway.api_base == "https://stripe.test"
        assert isinstance(gateway.client, stripe.StripeClient)
        await gateway.close()

    def test_stripe_requires_key(self):
        with pytest.raises(ValueError):
            get_payment_gateway("stripe", {"secret_key": None})

    def test_unsupported(self):
        with pytest.raises(UnsupportedGatewayError):
            get_payment_gateway("paypal", {})
        assert get_supported_gateways() == ["stripe", "mock"]
