import uuid
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import relationship

from app.db.types import GUID
from app.utils.time_utils import utcnow

from .base import Base


class BoostStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


OPEN_STATUSES = (BoostStatus.PENDING, BoostStatus.ACTIVE)
TERMINAL_STATUSES = (BoostStatus.EXPIRED, BoostStatus.CANCELED)


class CategoryQueue(Base):
    """
    One FIFO boost queue per category plus the single slot occupant.

    ``version`` is an optimistic-concurrency column: every mutation bumps
    ``last_updated`` so the row is re-versioned, and a concurrent writer that
    loaded an older version fails its flush.
    """

    __tablename__ = "category_queues"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    category_id = Column(GUID, ForeignKey("categories.id"), nullable=False, unique=True)
    category_name = Column(String, nullable=False)

    # Currently active slot
    active_entry_id = Column(GUID, nullable=True)
    active_business_id = Column(GUID, nullable=True, index=True)
    active_subscription_id = Column(GUID, nullable=True)
    boost_start_time = Column(DateTime, nullable=True)
    boost_end_time = Column(DateTime, nullable=True)

    next_sequence = Column(Integer, nullable=False, default=1)
    version = Column(Integer, nullable=False)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)
    created_at = Column(DateTime, default=utcnow)

    entries = relationship(
        "BoostQueueEntry",
        back_populates="queue",
        order_by="BoostQueueEntry.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_active(self) -> bool:
        return self.active_business_id is not None

    @property
    def pending_entries(self) -> list["BoostQueueEntry"]:
        return [e for e in self.entries if e.status == BoostStatus.PENDING]

    @property
    def active_entry(self) -> "BoostQueueEntry | None":
        if self.active_entry_id is None:
            return None
        return next((e for e in self.entries if e.id == self.active_entry_id), None)

    def __repr__(self) -> str:
        return f"<CategoryQueue(category={self.category_name}, active={self.active_business_id}, entries={len(self.entries)})>"


class BoostQueueEntry(Base):
    """
    A request to occupy a category's slot. Terminal entries are kept for history.
    """

    __tablename__ = "boost_queue_entries"

    __table_args__ = (
        Index('ix_boost_queue_entries_queue_status', 'queue_id', 'status'),
        Index('ix_boost_queue_entries_business', 'business_id'),
        # At most one open entry per business per category
        Index(
            'uq_boost_queue_entries_open_business',
            'queue_id', 'business_id',
            unique=True,
            postgresql_where=text("status IN ('pending', 'active')"),
            sqlite_where=text("status IN ('pending', 'active')"),
        ),
        # At most one active entry per category
        Index(
            'uq_boost_queue_entries_active_slot',
            'queue_id',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    queue_id = Column(GUID, ForeignKey("category_queues.id"), nullable=False)

    business_id = Column(GUID, ForeignKey("businesses.id"), nullable=False)
    business_name = Column(String, nullable=False)
    business_owner_id = Column(GUID, ForeignKey("business_owners.id"), nullable=False)
    subscription_id = Column(GUID, ForeignKey("subscriptions.id"), nullable=False)
    payment_intent_id = Column(String, nullable=True)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")

    status = Column(
        SQLAlchemyEnum(BoostStatus, name="boost_status_enum", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=BoostStatus.PENDING.value,
    )
    sequence = Column(Integer, nullable=False)
    position = Column(Integer, nullable=True)

    boost_start_time = Column(DateTime, nullable=True)
    boost_end_time = Column(DateTime, nullable=True)
    estimated_start_time = Column(DateTime, nullable=True)
    estimated_end_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    expired_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    queue = relationship("CategoryQueue", back_populates="entries", lazy="noload")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def __repr__(self) -> str:
        return f"<BoostQueueEntry(business={self.business_name}, status={self.status}, position={self.position})>"
