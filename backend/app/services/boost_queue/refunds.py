"""
Refund calculator for canceled boosts.

A boost that never started is refunded in full. An active boost is refunded
according to the tier its consumed window fraction falls in; the schedule is
tiered, not pro-rata.
"""
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel

from app.core.config import settings
from app.exceptions import AlreadyTerminalError, PaymentGatewayError, PaymentGatewayRejectedError
from app.models import BoostStatus, RefundStatus
from app.schemas.refund_policy import RefundPolicy, refund_amount
from app.services.boost_queue.timing import usage_fraction
from app.services.payment_gateway.interface import UNCAPTURED_INTENT_STATUSES, PaymentGatewayInterface

logger = logging.getLogger(__name__)


class RefundAction(str, Enum):
    # Nothing may have been captured yet: cancel the intent, else refund in full
    CANCEL_INTENT_OR_REFUND = "cancel_intent_or_refund"
    REFUND = "refund"
    NONE = "none"


class RefundDecision(BaseModel):
    entry_status: BoostStatus
    percent: int
    amount: Decimal
    usage_fraction: Optional[float] = None
    action: RefundAction


def refund_idempotency_key(subscription) -> str:
    """
    Stable across retries of a timed out or unanswered refund. A new key is
    used only after the gateway definitely refused the current one.
    """
    rejections = subscription.refund_rejections or 0
    if rejections:
        return f"boost-refund-{subscription.id}-{rejections}"
    return f"boost-refund-{subscription.id}"


def record_refund_failure(subscription, error: PaymentGatewayError) -> None:
    subscription.refund_attempts = (subscription.refund_attempts or 0) + 1
    if isinstance(error, PaymentGatewayRejectedError):
        subscription.refund_rejections = (subscription.refund_rejections or 0) + 1
    subscription.refund_status = RefundStatus.PENDING_COMPENSATION
    subscription.refund_error = error.message


def load_refund_policy(raw: Optional[str] = None) -> RefundPolicy:
    return RefundPolicy.from_json(raw if raw is not None else settings.BOOST_REFUND_TIERS)


def calculate_refund(
    status: BoostStatus,
    amount_paid: Decimal,
    now: datetime,
    boost_start_time: Optional[datetime] = None,
    boost_end_time: Optional[datetime] = None,
    policy: Optional[RefundPolicy] = None,
) -> RefundDecision:
    policy = policy or RefundPolicy()
    status = BoostStatus(status)
    amount_paid = Decimal(amount_paid or 0)

    if status in (BoostStatus.EXPIRED, BoostStatus.CANCELED):
        raise AlreadyTerminalError(f"Boost is already {status.value}. No refund issued.")

    if status == BoostStatus.PENDING:
        percent = policy.pending_percent
        return RefundDecision(
            entry_status=status,
            percent=percent,
            amount=refund_amount(amount_paid, percent),
            action=RefundAction.CANCEL_INTENT_OR_REFUND if percent and amount_paid > 0 else RefundAction.NONE,
        )

    if boost_start_time is None or boost_end_time is None:
        raise ValueError("An active boost must have a start and end time to compute its refund.")

    used = usage_fraction(now, boost_start_time, boost_end_time)
    percent = policy.percent_for_usage(used)
    amount = refund_amount(amount_paid, percent)
    logger.debug(f"Active boost used {used:.2%} of its window; refunding {percent}% ({amount})")
    return RefundDecision(
        entry_status=status,
        percent=percent,
        amount=amount,
        usage_fraction=used,
        action=RefundAction.REFUND if amount > 0 else RefundAction.NONE,
    )


class RefundExecutor:
    """
    Carries out a refund decision against the payment gateway. Gateway
    failures propagate as PaymentGatewayError; callers record them for retry.
    """

    def __init__(self, payment_gateway: PaymentGatewayInterface):
        self.payment_gateway = payment_gateway

    async def execute(
        self,
        payment_intent_id: Optional[str],
        action: RefundAction,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[RefundStatus, Optional[str]]:
        """
        Returns the resulting refund status and the gateway reference
        (refund id, or the intent id when the intent was canceled instead).
        """
        if action == RefundAction.NONE or not payment_intent_id or Decimal(amount) <= 0:
            return RefundStatus.NONE, None

        if action == RefundAction.CANCEL_INTENT_OR_REFUND:
            intent = await self.payment_gateway.get_payment_intent(payment_intent_id)
            if intent["status"] == "canceled":
                return RefundStatus.INTENT_CANCELED, payment_intent_id
            if intent["status"] in UNCAPTURED_INTENT_STATUSES:
                await self.payment_gateway.cancel_payment_intent(payment_intent_id)
                logger.info(f"Canceled uncaptured payment intent {payment_intent_id}")
                return RefundStatus.INTENT_CANCELED, payment_intent_id

        refund = await self.payment_gateway.create_refund(payment_intent_id, Decimal(amount), idempotency_key=idempotency_key)
        return RefundStatus.ISSUED, refund["id"]
