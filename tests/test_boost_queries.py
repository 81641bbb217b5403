import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from app.exceptions import BusinessNotFoundError, CategoryNotFoundError
from app.models import BoostStatus
from app.services.boost_queue import BoostQueueQueries

from tests.conftest import BOOST_DURATION, T0


@pytest.fixture
async def category(make_category):
    return await make_category("Tailors")


class TestBusinessQueueStatus:
    async def test_active_business(self, category, boost_business, queries, clock):
        x, x_sub, _ = await boost_business(category)
        clock.advance(hours=6)

        status = await queries.get_business_queue_status(x.id)

        assert status.has_entry
        assert status.is_active
        assert status.status == BoostStatus.ACTIVE
        assert status.subscription_id == x_sub.id
        assert status.boost_end_time == T0 + BOOST_DURATION
        assert status.time_remaining_seconds == 18 * 3600
        assert status.position is None

    async def test_pending_business(self, category, boost_business, queries, clock):
        await boost_business(category)
        await boost_business(category)
        z, _, _ = await boost_business(category)
        clock.advance(hours=6)

        status = await queries.get_business_queue_status(z.id)

        assert status.status == BoostStatus.PENDING
        assert not status.is_active
        assert status.position == 2
        assert status.total_pending == 2
        assert status.estimated_start_time == T0 + 2 * BOOST_DURATION
        assert status.estimated_end_time == T0 + 3 * BOOST_DURATION
        countdown = status.time_until_activation
        assert (countdown.days, countdown.hours, countdown.minutes) == (1, 18, 0)
        assert countdown.formatted == "1d 18h 0m"

    async def test_business_without_entry(self, category, boost_business, make_business, queries):
        await boost_business(category)
        business = await make_business(category)

        status = await queries.get_business_queue_status(business.id)

        assert not status.has_entry
        assert status.category_name == "Tailors"
        assert status.total_pending == 0

    async def test_category_without_queue(self, category, make_business, queries):
        business = await make_business(category)
        status = await queries.get_business_queue_status(business.id)
        assert not status.has_entry
        assert status.category_id == category.id

    async def test_business_without_category(self, make_business, queries):
        business = await make_business(None)
        status = await queries.get_business_queue_status(business.id)
        assert not status.has_entry
        assert status.category_id is None

    async def test_unknown_business(self, queries):
        with pytest.raises(BusinessNotFoundError):
            await queries.get_business_queue_status(uuid.uuid4())


class TestQueueViews:
    async def test_category_queue(self, category, boost_business, queries, clock):
        await boost_business(category, name="X")
        await boost_business(category, name="Y")
        clock.advance(hours=1)

        view = await queries.get_category_queue(category.id)

        assert view.active_entry.business_name == "X"
        assert [e.business_name for e in view.pending] == ["Y"]
        assert view.total_pending == 1
        assert view.time_remaining_seconds == 23 * 3600

    async def test_unknown_category_queue(self, queries):
        with pytest.raises(CategoryNotFoundError):
            await queries.get_category_queue(uuid.uuid4())

    async def test_category_queue_served_from_snapshot(self, category, boost_business, session_factory, clock):
        await boost_business(category, name="X")
        cache = AsyncMock()
        cache.get_queue_snapshot.return_value = None
        cached_queries = BoostQueueQueries(session_factory, cache=cache, boost_duration=BOOST_DURATION, clock=clock)

        view = await cached_queries.get_category_queue(category.id)

        cache.set_queue_snapshot.assert_awaited_once()
        cache.get_queue_snapshot.return_value = cache.set_queue_snapshot.await_args.args[1]
        again = await cached_queries.get_category_queue(category.id)
        assert again == view

    async def test_list_and_active_boosts(self, make_category, boost_business, queries):
        first = await make_category("Gyms")
        second = await make_category("Spas")
        x, _, _ = await boost_business(first)
        await boost_business(first)
        await boost_business(second)

        queues = await queries.list_queues()
        active = await queries.get_all_active_boosts()

        assert {q.category_name for q in queues} == {"Gyms", "Spas"}
        assert len(active) == 2
        assert x.id in {a.business_id for a in active}
        assert all(a.time_remaining_seconds == 24 * 3600 for a in active)


class TestStats:
    async def test_category_stats(self, category, boost_business, cancellation_service, queries, clock):
        await boost_business(category, amount=Decimal("30.00"))
        y, _, _ = await boost_business(category, amount=Decimal("20.00"))
        await boost_business(category, amount=Decimal("10.00"))
        clock.advance(hours=1)
        await cancellation_service.cancel_boost(y.id)

        stats = await queries.get_category_queue_stats(category.id)

        assert stats.has_active
        assert (stats.active, stats.pending, stats.canceled, stats.expired) == (1, 1, 1, 0)
        assert stats.total_entries == 3
        assert stats.total_revenue == Decimal("60.00")

    async def test_global_stats(self, category, boost_business, cancellation_service, reconciler, queries, clock):
        x, _, _ = await boost_business(category, amount=Decimal("30.00"))
        y, _, _ = await boost_business(category, amount=Decimal("30.00"))
        await boost_business(category, amount=Decimal("30.00"))
        clock.advance(hours=1)
        await cancellation_service.cancel_boost(y.id)
        clock.advance(hours=23)
        await reconciler.reconcile_category(category.id)

        stats = await queries.get_global_stats()

        assert stats.total_queues == 1
        assert (stats.active_boosts, stats.pending_entries) == (1, 0)
        assert (stats.expired_entries, stats.canceled_entries) == (1, 1)
        assert stats.total_revenue == Decimal("90.00")
        assert stats.total_refunded == Decimal("30.00")
        assert stats.pending_compensation == 0
        assert stats.generated_at == clock()

    async def test_global_stats_cached(self, session_factory, clock):
        cache = AsyncMock()
        cache.get_boost_stats.return_value = {
            "total_queues": 7,
            "active_boosts": 3,
            "generated_at": (T0 - timedelta(seconds=10)).isoformat(),
        }
        cached_queries = BoostQueueQueries(session_factory, cache=cache, boost_duration=BOOST_DURATION, clock=clock)

        stats = await cached_queries.get_global_stats()

        assert stats.total_queues == 7
        cache.set_boost_stats.assert_not_awaited()

        await cached_queries.get_global_stats(use_cache=False)
        cache.set_boost_stats.assert_awaited_once()

    async def test_month_counts(self, category, boost_business, queries, clock):
        for moment in (
            datetime(2025, 11, 30, 23, 0),
            datetime(2025, 12, 1, 0, 0),
            datetime(2026, 1, 1, 0, 0),
            T0,
        ):
            clock.now = moment
            await boost_business(category)

        stats = await queries.get_global_stats(use_cache=False)

        assert stats.boosts_this_month == 2
        assert stats.boosts_last_month == 1


class TestTrends:
    async def test_daily_purchases(self, category, boost_business, queries, clock):
        clock.now = datetime(2025, 12, 20, 12, 0)
        await boost_business(category, amount=Decimal("99.00"))
        clock.now = T0 - timedelta(days=3)
        await boost_business(category, amount=Decimal("30.00"))
        clock.advance(hours=6)
        await boost_business(category, amount=Decimal("20.00"))
        clock.now = T0
        await boost_business(category, amount=Decimal("10.00"))

        trends = await queries.get_boost_trends(period_days=7)

        assert trends.period_days == 7
        assert (trends.start, trends.end) == (T0 - timedelta(days=7), T0)
        assert [p.date for p in trends.points][0] == date(2025, 12, 29)
        assert len(trends.points) == 8
        by_day = {p.date: (p.boosts, p.revenue) for p in trends.points}
        assert by_day[date(2026, 1, 2)] == (2, Decimal("50.00"))
        assert by_day[date(2026, 1, 5)] == (1, Decimal("10.00"))
        assert by_day[date(2026, 1, 3)] == (0, Decimal("0"))
        assert sum(p.boosts for p in trends.points) == 3

    async def test_rejects_empty_period(self, queries):
        with pytest.raises(ValueError):
            await queries.get_boost_trends(period_days=0)
