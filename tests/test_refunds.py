"""
Tests for the tiered refund policy, the refund calculator and the refund executor.
"""
import json
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from app.exceptions import AlreadyTerminalError, PaymentGatewayError, PaymentGatewayRejectedError
from app.models import BoostStatus, RefundStatus
from app.schemas.refund_policy import RefundPolicy, RefundTier, refund_amount
from app.services.boost_queue.refunds import (
    RefundAction,
    RefundExecutor,
    calculate_refund,
    load_refund_policy,
    record_refund_failure,
    refund_idempotency_key,
)
from app.services.payment_gateway.mock_gateway import MockGateway

START = datetime(2026, 1, 5, 12, 0, 0)
END = START + timedelta(hours=24)
PAID = Decimal("40.00")


def at_usage(fraction: float) -> datetime:
    return START + timedelta(hours=24 * fraction)


class TestRefundPolicy:
    def test_default_tiers(self):
        policy = RefundPolicy()
        assert policy.percent_for_usage(0.0) == 50
        assert policy.percent_for_usage(0.49) == 50
        assert policy.percent_for_usage(0.5) == 25
        assert policy.percent_for_usage(0.74) == 25
        assert policy.percent_for_usage(0.75) == 0
        assert policy.percent_for_usage(1.0) == 0
        assert policy.pending_percent == 100

    def test_tiers_must_increase(self):
        with pytest.raises(ValidationError):
            RefundPolicy(tiers=[RefundTier(below_usage=0.75, refund_percent=25), RefundTier(below_usage=0.5, refund_percent=50)])

    def test_percent_bounds(self):
        with pytest.raises(ValidationError):
            RefundTier(below_usage=0.5, refund_percent=150)

    def test_from_json_list(self):
        policy = RefundPolicy.from_json(json.dumps([
            {"below_usage": 0.25, "refund_percent": 80},
            {"below_usage": 0.5, "refund_percent": 40},
        ]))
        assert policy.percent_for_usage(0.1) == 80
        assert policy.percent_for_usage(0.3) == 40
        assert policy.percent_for_usage(0.9) == 0

    def test_from_json_object(self):
        policy = RefundPolicy.from_json(json.dumps({"tiers": [], "exhausted_percent": 10, "pending_percent": 90}))
        assert policy.percent_for_usage(0.0) == 10
        assert policy.pending_percent == 90

    def test_from_json_empty_is_default(self):
        assert RefundPolicy.from_json(None) == RefundPolicy()
        assert RefundPolicy.from_json("") == RefundPolicy()

    def test_load_refund_policy_uses_raw_override(self):
        policy = load_refund_policy('[{"below_usage": 1.0, "refund_percent": 10}]')
        assert policy.percent_for_usage(0.99) == 10


class TestRefundAmount:
    def test_rounds_half_up_to_cents(self):
        assert refund_amount(Decimal("29.99"), 25) == Decimal("7.50")
        assert refund_amount(Decimal("0.05"), 50) == Decimal("0.03")

    def test_full_and_none(self):
        assert refund_amount(PAID, 100) == PAID
        assert refund_amount(PAID, 0) == Decimal("0.00")


class TestCalculateRefund:
    @pytest.mark.parametrize("fraction,percent,amount", [
        (0.1, 50, Decimal("20.00")),
        (0.6, 25, Decimal("10.00")),
        (0.9, 0, Decimal("0.00")),
    ])
    def test_active_tiers(self, fraction, percent, amount):
        decision = calculate_refund(BoostStatus.ACTIVE, PAID, at_usage(fraction), START, END)
        assert decision.percent == percent
        assert decision.amount == amount
        assert decision.usage_fraction == pytest.approx(fraction)

    def test_active_with_refund_issues_refund(self):
        decision = calculate_refund(BoostStatus.ACTIVE, PAID, at_usage(0.1), START, END)
        assert decision.action == RefundAction.REFUND

    def test_active_with_nothing_left_has_no_action(self):
        decision = calculate_refund(BoostStatus.ACTIVE, PAID, at_usage(0.9), START, END)
        assert decision.action == RefundAction.NONE

    def test_half_elapsed_falls_in_second_tier(self):
        decision = calculate_refund(BoostStatus.ACTIVE, PAID, at_usage(0.5), START, END)
        assert decision.percent == 25
        assert decision.amount == Decimal("10.00")

    def test_pending_is_full_refund(self):
        decision = calculate_refund(BoostStatus.PENDING, PAID, START)
        assert decision.percent == 100
        assert decision.amount == PAID
        assert decision.usage_fraction is None
        assert decision.action == RefundAction.CANCEL_INTENT_OR_REFUND

    def test_pending_free_boost_has_no_action(self):
        decision = calculate_refund(BoostStatus.PENDING, Decimal("0"), START)
        assert decision.action == RefundAction.NONE

    @pytest.mark.parametrize("status", [BoostStatus.EXPIRED, BoostStatus.CANCELED])
    def test_terminal_status_rejected(self, status):
        with pytest.raises(AlreadyTerminalError):
            calculate_refund(status, PAID, START, START, END)

    def test_active_requires_window(self):
        with pytest.raises(ValueError):
            calculate_refund(BoostStatus.ACTIVE, PAID, START)

    def test_custom_policy(self):
        policy = RefundPolicy(tiers=[RefundTier(below_usage=0.2, refund_percent=90)], exhausted_percent=5)
        assert calculate_refund(BoostStatus.ACTIVE, PAID, at_usage(0.1), START, END, policy).percent == 90
        assert calculate_refund(BoostStatus.ACTIVE, PAID, at_usage(0.3), START, END, policy).percent == 5


class TestRefundIdempotencyKey:
    class Sub:
        id = "abc"
        refund_attempts = 0
        refund_rejections = 0
        refund_status = RefundStatus.NONE
        refund_error = None

    def test_key_is_stable_across_ambiguous_failures(self):
        sub = self.Sub()
        first = refund_idempotency_key(sub)
        record_refund_failure(sub, PaymentGatewayError("Payment gateway request timed out."))

        assert first == "boost-refund-abc"
        assert refund_idempotency_key(sub) == first
        assert sub.refund_attempts == 1
        assert sub.refund_rejections == 0
        assert sub.refund_status == RefundStatus.PENDING_COMPENSATION

    def test_rejection_moves_to_a_new_key(self):
        sub = self.Sub()
        record_refund_failure(sub, PaymentGatewayRejectedError("Charge has already been refunded."))

        assert sub.refund_rejections == 1
        assert sub.refund_error == "Charge has already been refunded."
        assert refund_idempotency_key(sub) == "boost-refund-abc-1"


class TestRefundExecutor:
    async def test_cancels_uncaptured_intent(self):
        gateway = MockGateway(auto_succeed=False)
        intent = await gateway.create_payment_intent(PAID, "usd")
        status, reference = await RefundExecutor(gateway).execute(intent["id"], RefundAction.CANCEL_INTENT_OR_REFUND, PAID)
        assert status == RefundStatus.INTENT_CANCELED
        assert reference == intent["id"]
        assert gateway.intents[intent["id"]]["status"] == "canceled"

    async def test_already_canceled_intent_is_settled(self):
        gateway = MockGateway(auto_succeed=False)
        intent = await gateway.create_payment_intent(PAID, "usd")
        gateway.set_intent_status(intent["id"], "canceled")
        status, _ = await RefundExecutor(gateway).execute(intent["id"], RefundAction.CANCEL_INTENT_OR_REFUND, PAID)
        assert status == RefundStatus.INTENT_CANCELED
        assert gateway.refunds == {}

    async def test_refunds_captured_intent(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(PAID, "usd")
        status, reference = await RefundExecutor(gateway).execute(
            intent["id"], RefundAction.CANCEL_INTENT_OR_REFUND, PAID, idempotency_key="k1"
        )
        assert status == RefundStatus.ISSUED
        assert reference.startswith("re_mock_")
        assert gateway.intents[intent["id"]]["amount_refunded"] == PAID

    async def test_partial_refund(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(PAID, "usd")
        status, _ = await RefundExecutor(gateway).execute(intent["id"], RefundAction.REFUND, Decimal("10.00"))
        assert status == RefundStatus.ISSUED
        assert gateway.intents[intent["id"]]["amount_refunded"] == Decimal("10.00")

    async def test_nothing_to_do(self):
        gateway = AsyncMock()
        status, reference = await RefundExecutor(gateway).execute("pi_1", RefundAction.NONE, Decimal("0"))
        assert (status, reference) == (RefundStatus.NONE, None)
        gateway.create_refund.assert_not_awaited()

    async def test_gateway_failure_propagates(self):
        gateway = MockGateway()
        intent = await gateway.create_payment_intent(PAID, "usd")
        gateway.fail_operations.add("create_refund")
        with pytest.raises(PaymentGatewayError):
            await RefundExecutor(gateway).execute(intent["id"], RefundAction.REFUND, Decimal("10.00"))
