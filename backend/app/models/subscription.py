import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)

from app.db.types import GUID
from app.utils.time_utils import utcnow

from .base import Base


class SubscriptionType(str, Enum):
    BUSINESS = "business"
    BOOST = "boost"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class RefundStatus(str, Enum):
    NONE = "none"
    ISSUED = "issued"
    INTENT_CANCELED = "intent_canceled"
    PENDING_COMPENSATION = "pending_compensation"


class Subscription(Base):
    """
    A paid plan owned by a business. Boost subscriptions carry a snapshot of
    the queue entry they paid for (``boost_queue_info``); the snapshot is kept
    eventually consistent by the status projector.
    """

    __tablename__ = "subscriptions"

    __table_args__ = (
        Index('ix_subscriptions_business_type', 'business_id', 'subscription_type'),
        Index('ix_subscriptions_refund_status', 'refund_status'),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    business_id = Column(GUID, ForeignKey("businesses.id"), nullable=False)
    owner_id = Column(GUID, ForeignKey("business_owners.id"), nullable=False)

    subscription_type = Column(
        SQLAlchemyEnum(SubscriptionType, name="subscription_type_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=SubscriptionType.BOOST.value,
    )
    status = Column(
        SQLAlchemyEnum(SubscriptionStatus, name="subscription_status_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    payment_intent_id = Column(String, nullable=True, index=True)
    expires_at = Column(DateTime, nullable=True)

    # Boost queue snapshot
    queue_id = Column(GUID, nullable=True)
    queue_position = Column(Integer, nullable=True)
    estimated_start_time = Column(DateTime, nullable=True)
    estimated_end_time = Column(DateTime, nullable=True)
    is_currently_active = Column(Boolean, default=False, nullable=False)
    boost_start_time = Column(DateTime, nullable=True)
    boost_end_time = Column(DateTime, nullable=True)
    boost_category_id = Column(GUID, nullable=True)

    # Refund bookkeeping
    refund_percent = Column(Integer, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_status = Column(
        SQLAlchemyEnum(RefundStatus, name="refund_status_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=RefundStatus.NONE.value,
    )
    refund_id = Column(String, nullable=True)
    refund_error = Column(String, nullable=True)
    refund_attempts = Column(Integer, default=0, nullable=False)
    refund_rejections = Column(Integer, default=0, nullable=False)
    canceled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def boost_queue_info(self) -> dict:
        return {
            "queue_id": self.queue_id,
            "queue_position": self.queue_position,
            "estimated_start_time": self.estimated_start_time,
            "estimated_end_time": self.estimated_end_time,
            "is_currently_active": bool(self.is_currently_active),
            "boost_start_time": self.boost_start_time,
            "boost_end_time": self.boost_end_time,
            "category": self.boost_category_id,
        }
