import json
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class RefundTier(BaseModel):
    below_usage: float = Field(..., gt=0, le=1, description="Upper bound (exclusive) of the consumed window fraction this tier covers.")
    refund_percent: int = Field(..., ge=0, le=100, description="Share of the amount paid refunded inside this tier.")


class RefundPolicy(BaseModel):
    """
    Tiered refund schedule for canceled boosts. An active boost falls in the
    first tier whose ``below_usage`` exceeds its usage fraction; past every
    tier it gets ``exhausted_percent``. A boost that never started gets
    ``pending_percent``.
    """
    tiers: List[RefundTier] = Field(
        default_factory=lambda: [
            RefundTier(below_usage=0.5, refund_percent=50),
            RefundTier(below_usage=0.75, refund_percent=25),
        ]
    )
    exhausted_percent: int = Field(0, ge=0, le=100)
    pending_percent: int = Field(100, ge=0, le=100)

    @model_validator(mode='after')
    def validate_tier_order(self):
        bounds = [tier.below_usage for tier in self.tiers]
        if bounds != sorted(bounds) or len(set(bounds)) != len(bounds):
            raise ValueError("Refund tiers must have strictly increasing below_usage bounds.")
        return self

    def percent_for_usage(self, usage: float) -> int:
        for tier in self.tiers:
            if usage < tier.below_usage:
                return tier.refund_percent
        return self.exhausted_percent

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "RefundPolicy":
        """
        Builds a policy from ``BOOST_REFUND_TIERS``. Accepts either a list of
        tiers or a full policy object; empty input yields the default policy.
        """
        if not raw:
            return cls()
        data = json.loads(raw)
        if isinstance(data, list):
            return cls(tiers=data)
        return cls.model_validate(data)


def refund_amount(amount_paid: Decimal, percent: int) -> Decimal:
    return (Decimal(amount_paid) * Decimal(percent) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
