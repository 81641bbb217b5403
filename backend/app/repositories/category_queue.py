from datetime import datetime
from typing import List, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import BoostQueueEntry, CategoryQueue
from app.models.boost_queue import OPEN_STATUSES
from app.repositories.base import BaseRepository


class CategoryQueueRepository(BaseRepository[CategoryQueue]):
    def __init__(self, session: AsyncSession):
        super().__init__(CategoryQueue, session)

    async def get_by_category(self, category_id: UUID) -> CategoryQueue | None:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.category_id == category_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_all_queues(self) -> List[CategoryQueue]:
        result = await self.session.execute(
            select(self.model).order_by(self.model.category_name)
        )
        return result.scalars().all()

    async def get_queues_with_active_boost(self) -> List[CategoryQueue]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.active_business_id.is_not(None))
            .order_by(self.model.category_name)
        )
        return result.scalars().all()

    async def get_all_category_ids(self) -> List[UUID]:
        result = await self.session.execute(select(self.model.category_id))
        return list(result.scalars().all())


class BoostQueueEntryRepository(BaseRepository[BoostQueueEntry]):
    def __init__(self, session: AsyncSession):
        super().__init__(BoostQueueEntry, session)

    async def get_open_entry_for_business(self, business_id: UUID) -> BoostQueueEntry | None:
        result = await self.session.execute(
            select(self.model).where(
                self.model.business_id == business_id,
                self.model.status.in_([s.value for s in OPEN_STATUSES]),
            )
        )
        return result.scalars().first()

    async def get_latest_entry_for_business(self, business_id: UUID) -> BoostQueueEntry | None:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.business_id == business_id)
            .order_by(self.model.created_at.desc(), self.model.sequence.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_history_for_business(self, business_id: UUID, limit: int = 50) -> List[BoostQueueEntry]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.business_id == business_id)
            .order_by(self.model.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def count_created_between(self, start: datetime, end: datetime) -> int:
        """
        Counts boosts admitted in [start, end). Every entry is a paid purchase.
        """
        result = await self.session.execute(
            select(func.count(self.model.id)).where(
                self.model.created_at >= start,
                self.model.created_at < end,
            )
        )
        return result.scalar_one()

    async def get_purchases_between(self, start: datetime, end: datetime) -> List[Tuple[datetime, object]]:
        """
        Returns (created_at, amount_paid) for boosts admitted in [start, end], oldest first.
        """
        result = await self.session.execute(
            select(self.model.created_at, self.model.amount_paid)
            .where(self.model.created_at >= start, self.model.created_at <= end)
            .order_by(self.model.created_at)
        )
        return [tuple(row) for row in result.all()]
