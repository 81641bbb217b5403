from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import RefundStatus, Subscription
from app.repositories.base import BaseRepository


class SubscriptionRepository(BaseRepository[Subscription]):
    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    async def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        return await self.get(subscription_id)

    async def get_pending_compensation(self, limit: int = 50, canceled_before: Optional[datetime] = None) -> List[Subscription]:
        """
        Subscriptions whose refund could not be issued yet and must be retried.
        """
        query = select(self.model).where(self.model.refund_status == RefundStatus.PENDING_COMPENSATION.value)
        if canceled_before is not None:
            query = query.where(self.model.canceled_at <= canceled_before)
        result = await self.session.execute(
            query
            .order_by(self.model.canceled_at)
            .limit(limit)
        )
        return result.scalars().all()
