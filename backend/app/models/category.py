import uuid

from sqlalchemy import Boolean, Column, DateTime, String

from app.db.types import GUID
from app.utils.time_utils import utcnow

from .base import Base


class Category(Base):
    """
    A business classification. Boost slots are exclusive within a category.
    """

    __tablename__ = "categories"

    id = Column(GUID, primary_key=True, default=uuid.uuid4)
    name = Column(String, unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
