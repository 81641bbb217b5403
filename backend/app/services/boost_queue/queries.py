"""
Read-side views over the boost queues: per-business status, per-category
queues and aggregate statistics. Reads take no lock and may be slightly stale.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.exceptions import BusinessNotFoundError, CategoryNotFoundError
from app.models import BoostQueueEntry, BoostStatus, CategoryQueue, RefundStatus, Subscription, SubscriptionType
from app.repositories.business import BusinessRepository
from app.repositories.category_queue import BoostQueueEntryRepository, CategoryQueueRepository
from app.schemas.boost_queue import (
    ActiveBoostSchema,
    BoostTrendPoint,
    BoostTrends,
    BusinessQueueStatus,
    CategoryQueueSchema,
    CategoryQueueStats,
    GlobalBoostStats,
    QueueEntrySchema,
    TimeUntilActivation,
)
from app.services.boost_queue.store import CategoryQueueStore, find_open_entry
from app.services.boost_queue.timing import time_remaining, time_until_activation
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def _seconds(remaining: Optional[timedelta]) -> Optional[int]:
    return int(remaining.total_seconds()) if remaining is not None else None


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def previous_month_start(moment: datetime) -> datetime:
    return month_start(month_start(moment) - timedelta(days=1))


def next_month_start(moment: datetime) -> datetime:
    return month_start(month_start(moment) + timedelta(days=32))


class BoostQueueQueries:
    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        cache=None,
        boost_duration: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        category_queue_store_class=CategoryQueueStore,
        business_repository_class=BusinessRepository,
        category_queue_repository_class=CategoryQueueRepository,
        entry_repository_class=BoostQueueEntryRepository,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.boost_duration = boost_duration or settings.boost_duration
        self.clock = clock
        self.category_queue_store_class = category_queue_store_class
        self.business_repository_class = business_repository_class
        self.category_queue_repository_class = category_queue_repository_class
        self.entry_repository_class = entry_repository_class

    async def get_business_queue_status(self, business_id: uuid.UUID) -> BusinessQueueStatus:
        async with self.session_factory() as session:
            business = await self.business_repository_class(session).get_by_id(business_id)
            if business is None:
                raise BusinessNotFoundError(f"Business {business_id} not found.")
            if business.category_id is None:
                return BusinessQueueStatus(business_id=business_id, has_entry=False)

            store = self.category_queue_store_class(session, boost_duration=self.boost_duration)
            queue = await store.get(business.category_id)
            if queue is None:
                return BusinessQueueStatus(business_id=business_id, category_id=business.category_id, has_entry=False)

            now = self.clock()
            total_pending = len(queue.pending_entries)
            entry = find_open_entry(queue, business_id)
            if entry is None:
                return BusinessQueueStatus(
                    business_id=business_id,
                    category_id=queue.category_id,
                    category_name=queue.category_name,
                    has_entry=False,
                    total_pending=total_pending,
                )

            if store.is_business_active(queue, business_id):
                return BusinessQueueStatus(
                    business_id=business_id,
                    category_id=queue.category_id,
                    category_name=queue.category_name,
                    has_entry=True,
                    status=BoostStatus.ACTIVE,
                    is_active=True,
                    subscription_id=entry.subscription_id,
                    total_pending=total_pending,
                    boost_start_time=entry.boost_start_time,
                    boost_end_time=entry.boost_end_time,
                    time_remaining_seconds=_seconds(store.get_current_boost_time_remaining(queue, now)),
                )

            position = store.get_queue_position(queue, business_id, now)
            estimated_start = store.get_estimated_start_time(queue, business_id, now)
            countdown = time_until_activation(now, estimated_start)
            return BusinessQueueStatus(
                business_id=business_id,
                category_id=queue.category_id,
                category_name=queue.category_name,
                has_entry=True,
                status=BoostStatus.PENDING,
                subscription_id=entry.subscription_id,
                position=position,
                total_pending=total_pending,
                estimated_start_time=estimated_start,
                estimated_end_time=estimated_start + self.boost_duration if estimated_start else None,
                time_until_activation=TimeUntilActivation(**countdown) if countdown else None,
            )

    def _queue_schema(self, queue: CategoryQueue, now: datetime) -> CategoryQueueSchema:
        pending = [QueueEntrySchema.model_validate(e) for e in queue.pending_entries]
        active = queue.active_entry
        return CategoryQueueSchema(
            id=queue.id,
            category_id=queue.category_id,
            category_name=queue.category_name,
            active_entry=QueueEntrySchema.model_validate(active) if active else None,
            boost_start_time=queue.boost_start_time,
            boost_end_time=queue.boost_end_time,
            time_remaining_seconds=_seconds(time_remaining(now, queue.boost_end_time)) if queue.has_active else None,
            pending=pending,
            total_pending=len(pending),
            last_updated=queue.last_updated,
        )

    async def get_category_queue(self, category_id: uuid.UUID, use_cache: bool = True) -> CategoryQueueSchema:
        if use_cache and self.cache:
            cached = await self.cache.get_queue_snapshot(category_id)
            if cached:
                return CategoryQueueSchema(**cached)

        async with self.session_factory() as session:
            queue = await self.category_queue_repository_class(session).get_by_category(category_id)
            if queue is None:
                raise CategoryNotFoundError(f"No boost queue exists for category {category_id}.")
            snapshot = self._queue_schema(queue, self.clock())

        if self.cache:
            await self.cache.set_queue_snapshot(category_id, snapshot.model_dump(mode="json"))
        return snapshot

    async def list_queues(self) -> List[CategoryQueueSchema]:
        async with self.session_factory() as session:
            queues = await self.category_queue_repository_class(session).get_all_queues()
            now = self.clock()
            return [self._queue_schema(queue, now) for queue in queues]

    async def get_all_active_boosts(self) -> List[ActiveBoostSchema]:
        async with self.session_factory() as session:
            queues = await self.category_queue_repository_class(session).get_queues_with_active_boost()
            now = self.clock()
            boosts = []
            for queue in queues:
                entry = queue.active_entry
                if entry is None:
                    logger.warning(f"Boost queue {queue.category_name} has an occupied slot without an active entry")
                    continue
                boosts.append(ActiveBoostSchema(
                    category_id=queue.category_id,
                    category_name=queue.category_name,
                    business_id=entry.business_id,
                    business_name=entry.business_name,
                    subscription_id=entry.subscription_id,
                    boost_start_time=queue.boost_start_time,
                    boost_end_time=queue.boost_end_time,
                    time_remaining_seconds=_seconds(time_remaining(now, queue.boost_end_time)),
                ))
            return boosts

    async def get_category_queue_stats(self, category_id: uuid.UUID) -> CategoryQueueStats:
        async with self.session_factory() as session:
            queue = await self.category_queue_repository_class(session).get_by_category(category_id)
            if queue is None:
                raise CategoryNotFoundError(f"No boost queue exists for category {category_id}.")

            counts = {status: 0 for status in BoostStatus}
            revenue = Decimal("0")
            for entry in queue.entries:
                counts[BoostStatus(entry.status)] += 1
                revenue += Decimal(entry.amount_paid or 0)

            return CategoryQueueStats(
                category_id=queue.category_id,
                category_name=queue.category_name,
                has_active=queue.has_active,
                active_business_id=queue.active_business_id,
                pending=counts[BoostStatus.PENDING],
                active=counts[BoostStatus.ACTIVE],
                expired=counts[BoostStatus.EXPIRED],
                canceled=counts[BoostStatus.CANCELED],
                total_entries=len(queue.entries),
                total_revenue=revenue,
            )

    async def get_global_stats(self, use_cache: bool = True) -> GlobalBoostStats:
        if use_cache and self.cache:
            cached = await self.cache.get_boost_stats()
            if cached:
                return GlobalBoostStats(**cached)

        async with self.session_factory() as session:
            total_queues = (await session.execute(select(func.count(CategoryQueue.id)))).scalar_one()

            rows = await session.execute(
                select(BoostQueueEntry.status, func.count(BoostQueueEntry.id), func.coalesce(func.sum(BoostQueueEntry.amount_paid), 0))
                .group_by(BoostQueueEntry.status)
            )
            counts = {status: 0 for status in BoostStatus}
            revenue = Decimal("0")
            for status, count, amount in rows.all():
                counts[BoostStatus(status)] = count
                revenue += Decimal(str(amount))

            refunded = (await session.execute(
                select(func.coalesce(func.sum(Subscription.refund_amount), 0)).where(
                    Subscription.subscription_type == SubscriptionType.BOOST.value,
                    Subscription.refund_status.in_([RefundStatus.ISSUED.value, RefundStatus.INTENT_CANCELED.value]),
                )
            )).scalar_one()
            pending_compensation = (await session.execute(
                select(func.count(Subscription.id)).where(
                    Subscription.refund_status == RefundStatus.PENDING_COMPENSATION.value
                )
            )).scalar_one()

            now = self.clock()
            entries = self.entry_repository_class(session)
            boosts_this_month = await entries.count_created_between(month_start(now), next_month_start(now))
            boosts_last_month = await entries.count_created_between(previous_month_start(now), month_start(now))

        stats = GlobalBoostStats(
            total_queues=total_queues,
            active_boosts=counts[BoostStatus.ACTIVE],
            pending_entries=counts[BoostStatus.PENDING],
            expired_entries=counts[BoostStatus.EXPIRED],
            canceled_entries=counts[BoostStatus.CANCELED],
            total_revenue=revenue,
            total_refunded=Decimal(str(refunded)),
            pending_compensation=pending_compensation,
            boosts_this_month=boosts_this_month,
            boosts_last_month=boosts_last_month,
            generated_at=now,
        )
        if self.cache:
            await self.cache.set_boost_stats(stats.model_dump(mode="json"))
        return stats

    async def get_boost_trends(self, period_days: int = 30) -> BoostTrends:
        """
        Boost purchases and revenue per UTC day over the last ``period_days``.
        Days without purchases are reported with zero counts.
        """
        if period_days < 1:
            raise ValueError("period_days must be at least 1")

        end = self.clock()
        start = end - timedelta(days=period_days)
        async with self.session_factory() as session:
            purchases = await self.entry_repository_class(session).get_purchases_between(start, end)

        points = {}
        day = start.date()
        while day <= end.date():
            points[day] = BoostTrendPoint(date=day)
            day += timedelta(days=1)
        for created_at, amount_paid in purchases:
            point = points[created_at.date()]
            point.boosts += 1
            point.revenue += Decimal(str(amount_paid or 0))

        return BoostTrends(period_days=period_days, start=start, end=end, points=list(points.values()))
