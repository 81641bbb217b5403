import itertools
import logging
from decimal import Decimal
from typing import Dict, Optional, Set

from app.exceptions import PaymentGatewayError, PaymentGatewayRejectedError
from app.services.payment_gateway.interface import UNCAPTURED_INTENT_STATUSES, PaymentGatewayInterface

logger = logging.getLogger(__name__)


class MockGateway(PaymentGatewayInterface):
    """
    In-memory gateway for tests and local runs. Ids are deterministic and
    intents succeed immediately unless ``auto_succeed`` is off.

    ``fail_operations`` names methods that raise PaymentGatewayError on their
    next calls, e.g. {"create_refund"}. ``reject_operations`` raise
    PaymentGatewayRejectedError instead. ``lost_reply_operations`` carry out
    the call and then raise, like a gateway whose reply never arrived.
    """
    name = "mock"

    def __init__(self, auto_succeed: bool = True):
        self.auto_succeed = auto_succeed
        self.intents: Dict[str, dict] = {}
        self.refunds: Dict[str, dict] = {}
        self.fail_operations: Set[str] = set()
        self.reject_operations: Set[str] = set()
        self.lost_reply_operations: Set[str] = set()
        self._intent_ids = itertools.count(1)
        self._refund_ids = itertools.count(1)

    def _check_failure(self, operation: str):
        if operation in self.fail_operations:
            raise PaymentGatewayError(f"Mock gateway failure injected for {operation}.")
        if operation in self.reject_operations:
            raise PaymentGatewayRejectedError(f"Mock gateway rejected {operation}.")

    def _check_lost_reply(self, operation: str):
        if operation in self.lost_reply_operations:
            raise PaymentGatewayError(f"Mock gateway reply lost for {operation}.")

    def _intent(self, payment_intent_id: str) -> dict:
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            raise PaymentGatewayRejectedError(f"No such payment intent: {payment_intent_id}")
        return intent

    def set_intent_status(self, payment_intent_id: str, status: str):
        intent = self._intent(payment_intent_id)
        intent["status"] = status
        intent["amount_received"] = intent["amount"] if status == "succeeded" else Decimal("0")

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        self._check_failure("create_payment_intent")
        intent_id = f"pi_mock_{next(self._intent_ids):06d}"
        status = "succeeded" if self.auto_succeed else "requires_payment_method"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": status,
            "client_secret": f"{intent_id}_secret_mock",
            "amount": Decimal(amount),
            "amount_received": Decimal(amount) if status == "succeeded" else Decimal("0"),
            "amount_refunded": Decimal("0"),
            "currency": currency.lower(),
            "customer": customer_id,
            "metadata": dict(metadata or {}),
        }
        logger.info(f"MockGateway: created payment intent {intent_id} for {amount} {currency}")
        return dict(self.intents[intent_id])

    async def get_payment_intent(self, payment_intent_id: str) -> dict:
        self._check_failure("get_payment_intent")
        return dict(self._intent(payment_intent_id))

    async def cancel_payment_intent(self, payment_intent_id: str) -> dict:
        self._check_failure("cancel_payment_intent")
        intent = self._intent(payment_intent_id)
        if intent["status"] not in UNCAPTURED_INTENT_STATUSES:
            raise PaymentGatewayRejectedError(f"Payment intent {payment_intent_id} cannot be canceled in status {intent['status']}.")
        intent["status"] = "canceled"
        self._check_lost_reply("cancel_payment_intent")
        return dict(intent)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        self._check_failure("create_refund")
        if idempotency_key and idempotency_key in self.refunds:
            self._check_lost_reply("create_refund")
            return dict(self.refunds[idempotency_key])

        intent = self._intent(payment_intent_id)
        if intent["status"] != "succeeded":
            raise PaymentGatewayRejectedError(f"Payment intent {payment_intent_id} has no captured charge to refund.")

        refundable = intent["amount_received"] - intent["amount_refunded"]
        amount = refundable if amount is None else Decimal(amount)
        if amount <= 0 or amount > refundable:
            raise PaymentGatewayRejectedError(f"Refund amount {amount} exceeds refundable {refundable}.")

        intent["amount_refunded"] += amount
        refund = {
            "id": f"re_mock_{next(self._refund_ids):06d}",
            "status": "succeeded",
            "amount": amount,
            "currency": intent["currency"],
            "payment_intent": payment_intent_id,
        }
        self.refunds[idempotency_key or refund["id"]] = refund
        logger.info(f"MockGateway: refunded {amount} on {payment_intent_id}")
        self._check_lost_reply("create_refund")
        return dict(refund)

    async def close(self):
        pass
