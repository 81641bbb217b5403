from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models import BoostStatus, RefundStatus


class PurchaseRequest(BaseModel):
    business_id: UUID


class PurchaseStartResponse(BaseModel):
    subscription_id: UUID
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    payment_status: str


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class QueueEntrySchema(BaseModel):
    id: UUID
    business_id: UUID
    business_name: str
    subscription_id: UUID
    status: BoostStatus
    sequence: int
    position: Optional[int] = None
    amount_paid: Decimal
    currency: str
    boost_start_time: Optional[datetime] = None
    boost_end_time: Optional[datetime] = None
    estimated_start_time: Optional[datetime] = None
    estimated_end_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AdmissionResult(BaseModel):
    subscription_id: UUID
    business_id: UUID
    category_id: UUID
    category_name: str
    status: BoostStatus
    activated_immediately: bool
    position: Optional[int] = None
    estimated_start_time: Optional[datetime] = None
    estimated_end_time: Optional[datetime] = None
    boost_start_time: Optional[datetime] = None
    boost_end_time: Optional[datetime] = None


class CancellationResult(BaseModel):
    business_id: UUID
    subscription_id: UUID
    category_id: UUID
    previous_status: BoostStatus
    refund_percent: int
    refund_amount: Decimal
    currency: str
    refund_status: RefundStatus
    refund_id: Optional[str] = None
    usage_fraction: Optional[float] = None
    refund_error: Optional[str] = None
    promoted_business_id: Optional[UUID] = None
    message: str


class TimeUntilActivation(BaseModel):
    total_seconds: int
    days: int
    hours: int
    minutes: int
    formatted: str


class BusinessQueueStatus(BaseModel):
    business_id: UUID
    category_id: Optional[UUID] = None
    category_name: Optional[str] = None
    has_entry: bool
    status: Optional[BoostStatus] = None
    is_active: bool = False
    subscription_id: Optional[UUID] = None
    position: Optional[int] = None
    total_pending: int = 0
    estimated_start_time: Optional[datetime] = None
    estimated_end_time: Optional[datetime] = None
    boost_start_time: Optional[datetime] = None
    boost_end_time: Optional[datetime] = None
    time_remaining_seconds: Optional[int] = None
    time_until_activation: Optional[TimeUntilActivation] = None


class CategoryQueueSchema(BaseModel):
    id: UUID
    category_id: UUID
    category_name: str
    active_entry: Optional[QueueEntrySchema] = None
    boost_start_time: Optional[datetime] = None
    boost_end_time: Optional[datetime] = None
    time_remaining_seconds: Optional[int] = None
    pending: List[QueueEntrySchema] = []
    total_pending: int = 0
    last_updated: Optional[datetime] = None


class ActiveBoostSchema(BaseModel):
    category_id: UUID
    category_name: str
    business_id: UUID
    business_name: str
    subscription_id: UUID
    boost_start_time: datetime
    boost_end_time: datetime
    time_remaining_seconds: int


class CategoryQueueStats(BaseModel):
    category_id: UUID
    category_name: str
    has_active: bool
    active_business_id: Optional[UUID] = None
    pending: int = 0
    active: int = 0
    expired: int = 0
    canceled: int = 0
    total_entries: int = 0
    total_revenue: Decimal = Decimal("0")


class GlobalBoostStats(BaseModel):
    total_queues: int = 0
    active_boosts: int = 0
    pending_entries: int = 0
    expired_entries: int = 0
    canceled_entries: int = 0
    total_revenue: Decimal = Decimal("0")
    total_refunded: Decimal = Decimal("0")
    pending_compensation: int = 0
    boosts_this_month: int = 0
    boosts_last_month: int = 0
    generated_at: datetime


class BoostTrendPoint(BaseModel):
    date: date
    boosts: int = 0
    revenue: Decimal = Decimal("0")


class BoostTrends(BaseModel):
    period_days: int
    start: datetime
    end: datetime
    points: List[BoostTrendPoint] = []


class ReconcileResult(BaseModel):
    category_id: UUID
    category_name: str
    expired_business_id: Optional[UUID] = None
    activated_business_id: Optional[UUID] = None
    violations: List[str] = []

    @property
    def changed(self) -> bool:
        return self.expired_business_id is not None or self.activated_business_id is not None


class ReconcileSummary(BaseModel):
    categories_checked: int = 0
    expired: int = 0
    activated: int = 0
    errors: int = 0
    refunds_retried: int = 0
    results: List[ReconcileResult] = []
