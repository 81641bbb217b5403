from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

# Intent states in which no money has been captured yet
UNCAPTURED_INTENT_STATUSES = frozenset({
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
    "processing",
})


class PaymentGatewayInterface(ABC):
    """
    Abstract base class for payment gateways.
    Amounts are always passed and returned in major currency units as Decimal.
    """
    name: str = "abstract"

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Must return a dictionary containing at least 'id', 'client_secret' and 'status'.
        """
        pass

    @abstractmethod
    async def get_payment_intent(self, payment_intent_id: str) -> dict:
        """
        Must return a dictionary containing at least 'id', 'status' and 'amount'.
        """
        pass

    @abstractmethod
    async def cancel_payment_intent(self, payment_intent_id: str) -> dict:
        pass

    @abstractmethod
    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """
        Refunds a captured payment; ``amount=None`` refunds the remainder.
        Must return a dictionary containing at least 'id', 'status' and 'amount'.
        """
        pass

    @abstractmethod
    async def close(self):
        """
        Releases any network resources held by the gateway.
        """
        pass
