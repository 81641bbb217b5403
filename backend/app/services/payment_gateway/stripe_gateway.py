import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

from app.core.circuit_breaker import get_payment_circuit
from app.services.payment_gateway.error_mapping import REJECTED_STRIPE_ERRORS, map_gateway_errors
from app.services.payment_gateway.interface import PaymentGatewayInterface

logger = logging.getLogger(__name__)

# Currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripeGateway(PaymentGatewayInterface):
    """
    Stripe connector over the official SDK's async client. Every call goes
    through the shared payment circuit breaker; idempotency keys are passed
    as request options.
    """
    name = "stripe"

    def __init__(
        self,
        secret_key: str,
        api_base: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.api_base = api_base
        self._http_client = None
        if client is None:
            self._http_client = stripe.HTTPXClient(timeout=timeout)
            client = stripe.StripeClient(
                secret_key,
                base_addresses={"api": api_base} if api_base else {},
                http_client=self._http_client,
            )
        self.client = client
        self.circuit = get_payment_circuit(self.name, ignored_exceptions=REJECTED_STRIPE_ERRORS)

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> dict:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    def _normalize_intent(self, intent) -> dict:
        currency = intent.get("currency") or "usd"
        return {
            "id": intent["id"],
            "status": intent["status"],
            "client_secret": intent.get("client_secret"),
            "amount": from_minor_units(intent.get("amount") or 0, currency),
            "amount_received": from_minor_units(intent.get("amount_received") or 0, currency),
            "currency": currency,
            "metadata": dict(intent.get("metadata") or {}),
        }

    @map_gateway_errors
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        params = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": {key: str(value) for key, value in (metadata or {}).items()},
        }
        if customer_id:
            params["customer"] = customer_id

        async with self.circuit:
            intent = await self.client.v1.payment_intents.create_async(params, options=self._options(idempotency_key))
        logger.info(f"Created payment intent {intent['id']} for {amount} {currency}")
        return self._normalize_intent(intent)

    @map_gateway_errors
    async def get_payment_intent(self, payment_intent_id: str) -> dict:
        async with self.circuit:
            intent = await self.client.v1.payment_intents.retrieve_async(payment_intent_id)
        return self._normalize_intent(intent)

    @map_gateway_errors
    async def cancel_payment_intent(self, payment_intent_id: str) -> dict:
        async with self.circuit:
            intent = await self.client.v1.payment_intents.cancel_async(payment_intent_id)
        logger.info(f"Canceled payment intent {payment_intent_id}")
        return self._normalize_intent(intent)

    @map_gateway_errors
    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        params = {"payment_intent": payment_intent_id}
        currency = None
        if amount is not None:
            # Minor units depend on the charge currency
            async with self.circuit:
                intent = await self.client.v1.payment_intents.retrieve_async(payment_intent_id)
            currency = intent.get("currency") or "usd"
            params["amount"] = to_minor_units(amount, currency)

        async with self.circuit:
            refund = await self.client.v1.refunds.create_async(params, options=self._options(idempotency_key))
        currency = refund.get("currency") or currency or "usd"
        refunded = from_minor_units(refund.get("amount") or 0, currency)
        logger.info(f"Refunded {refunded} {currency} on payment intent {payment_intent_id} ({refund['id']})")
        return {"id": refund["id"], "status": refund.get("status"), "amount": refunded, "currency": currency}

    async def close(self):
        if self._http_client is not None:
            await self._http_client.close_async()
