import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from app.db.types import GUID
from app.utils.time_utils import utcnow

from .base import Base


class BusinessOwner(Base):
    __tablename__ = "business_owners"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    # Customer reference at the payment gateway
    payment_customer_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    businesses = relationship("Business", back_populates="owner", lazy="noload")


class Business(Base):
    """
    A listed business. The boost fields are a projection of the boost queue
    and are never written by anything other than the status projector.
    """

    __tablename__ = "businesses"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    owner_id = Column(GUID, ForeignKey("business_owners.id"), nullable=False, index=True)
    category_id = Column(GUID, ForeignKey("categories.id"), nullable=True, index=True)

    # Projected boost status
    is_boosted = Column(Boolean, default=False, nullable=False)
    is_boost_active = Column(Boolean, default=False, nullable=False)
    boost_expiry_at = Column(DateTime, nullable=True)
    boost_subscription_id = Column(GUID, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("BusinessOwner", back_populates="businesses", lazy="selectin")
    category = relationship("Category", lazy="selectin")
