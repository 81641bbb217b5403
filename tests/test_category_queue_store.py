"""
Tests for CategoryQueueStore - the durable per-category FIFO queue and slot.
"""
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from app.exceptions import CategoryNotFoundError, ConcurrencyConflictError, DuplicateEntryError, EntryNotFoundError
from app.models import BoostQueueEntry, BoostStatus
from app.services.boost_queue.store import CategoryQueueStore, find_open_entry, verify_invariants

from tests.conftest import BOOST_DURATION, T0

DAY = timedelta(hours=24)


def new_entry(name: str, business_id=None) -> BoostQueueEntry:
    return BoostQueueEntry(
        business_id=business_id or uuid.uuid4(),
        business_name=name,
        business_owner_id=uuid.uuid4(),
        subscription_id=uuid.uuid4(),
        amount_paid=Decimal("30.00"),
        currency="usd",
    )


@pytest.fixture
async def category(make_category):
    return await make_category("Plumbers")


@pytest.fixture
async def store_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(store_session):
    return CategoryQueueStore(store_session, boost_duration=BOOST_DURATION)


class TestGetOrCreate:
    async def test_creates_empty_queue_once(self, store, category):
        queue = await store.get_or_create(category.id)
        assert queue.category_name == "Plumbers"
        assert queue.entries == []
        assert not queue.has_active

        again = await store.get_or_create(category.id)
        assert again.id == queue.id

    async def test_get_returns_none_without_queue(self, store, category):
        assert await store.get(category.id) is None

    async def test_unknown_category(self, store):
        with pytest.raises(CategoryNotFoundError):
            await store.get_or_create(uuid.uuid4())

    async def test_inactive_category(self, store, make_category):
        inactive = await make_category("Closed", is_active=False)
        with pytest.raises(CategoryNotFoundError):
            await store.get_or_create(inactive.id)


class TestAdmissionMutations:
    async def test_activate_immediately_occupies_slot(self, store, category):
        queue = await store.get_or_create(category.id)
        entry = await store.activate_immediately(queue, new_entry("X"), T0)

        assert entry.status == BoostStatus.ACTIVE
        assert entry.boost_start_time == T0
        assert entry.boost_end_time == T0 + DAY
        assert queue.active_business_id == entry.business_id
        assert queue.active_entry_id == entry.id
        assert queue.boost_end_time == T0 + DAY

    async def test_activate_immediately_requires_free_slot(self, store, category):
        queue = await store.get_or_create(category.id)
        await store.activate_immediately(queue, new_entry("X"), T0)
        with pytest.raises(ConcurrencyConflictError):
            await store.activate_immediately(queue, new_entry("Y"), T0)

    async def test_add_to_queue_estimates_from_active_end(self, store, category):
        queue = await store.get_or_create(category.id)
        await store.activate_immediately(queue, new_entry("X"), T0)

        y = await store.add_to_queue(queue, new_entry("Y"), T0 + timedelta(hours=1))
        z = await store.add_to_queue(queue, new_entry("Z"), T0 + timedelta(hours=2))

        assert y.status == BoostStatus.PENDING
        assert (y.position, y.estimated_start_time, y.estimated_end_time) == (1, T0 + DAY, T0 + 2 * DAY)
        assert (z.position, z.estimated_start_time) == (2, T0 + 2 * DAY)
        assert y.sequence < z.sequence

    async def test_add_to_empty_slot_estimates_from_now(self, store, category):
        queue = await store.get_or_create(category.id)
        entry = await store.add_to_queue(queue, new_entry("Y"), T0)
        assert entry.estimated_start_time == T0

    async def test_duplicate_open_entry_rejected(self, store, category):
        queue = await store.get_or_create(category.id)
        business_id = uuid.uuid4()
        await store.activate_immediately(queue, new_entry("X", business_id), T0)

        with pytest.raises(DuplicateEntryError):
            await store.add_to_queue(queue, new_entry("X again", business_id), T0)
        assert len(queue.entries) == 1


class TestActivationAndExpiry:
    async def test_activate_next_is_noop_while_occupied(self, store, category):
        queue = await store.get_or_create(category.id)
        await store.activate_immediately(queue, new_entry("X"), T0)
        await store.add_to_queue(queue, new_entry("Y"), T0)
        assert await store.activate_next(queue, T0 + timedelta(hours=1)) is None

    async def test_activate_next_with_nothing_pending(self, store, category):
        queue = await store.get_or_create(category.id)
        assert await store.activate_next(queue, T0) is None

    async def test_expire_then_promote_head(self, store, category):
        queue = await store.get_or_create(category.id)
        x = await store.activate_immediately(queue, new_entry("X"), T0)
        y = await store.add_to_queue(queue, new_entry("Y"), T0 + timedelta(hours=1))
        z = await store.add_to_queue(queue, new_entry("Z"), T0 + timedelta(hours=2))

        tick = T0 + timedelta(hours=25)
        expired = await store.expire_current_boost(queue, tick)
        assert expired is x
        assert x.status == BoostStatus.EXPIRED
        assert x.expired_at == tick
        assert not queue.has_active
        assert y.status == BoostStatus.PENDING

        promoted = await store.activate_next(queue, tick)
        assert promoted is y
        assert (y.boost_start_time, y.boost_end_time) == (tick, tick + DAY)
        assert queue.active_business_id == y.business_id
        assert (z.position, z.estimated_start_time) == (1, tick + DAY)

    async def test_expire_without_active_is_noop(self, store, category):
        queue = await store.get_or_create(category.id)
        assert await store.expire_current_boost(queue, T0) is None


class TestRemoveFromQueue:
    async def test_remove_pending_shifts_later_entries(self, store, category):
        queue = await store.get_or_create(category.id)
        await store.activate_immediately(queue, new_entry("X"), T0)
        y = await store.add_to_queue(queue, new_entry("Y"), T0)
        z = await store.add_to_queue(queue, new_entry("Z"), T0)
        assert z.position == 2

        removed = await store.remove_from_queue(queue, y.business_id, T0 + timedelta(hours=3))
        assert removed is y
        assert y.status == BoostStatus.CANCELED
        assert y.canceled_at == T0 + timedelta(hours=3)
        assert (z.position, z.estimated_start_time) == (1, T0 + DAY)
        # Terminal entries are kept for history
        assert y in queue.entries

    async def test_remove_active_frees_slot_without_promotion(self, store, category):
        queue = await store.get_or_create(category.id)
        x = await store.activate_immediately(queue, new_entry("X"), T0)
        y = await store.add_to_queue(queue, new_entry("Y"), T0)

        await store.remove_from_queue(queue, x.business_id, T0 + timedelta(hours=2))
        assert x.status == BoostStatus.CANCELED
        assert not queue.has_active
        assert y.status == BoostStatus.PENDING

    async def test_remove_unknown_business(self, store, category):
        queue = await store.get_or_create(category.id)
        with pytest.raises(EntryNotFoundError):
            await store.remove_from_queue(queue, uuid.uuid4(), T0)


class TestReadProjections:
    async def test_position_estimate_and_activity(self, store, category):
        queue = await store.get_or_create(category.id)
        x = await store.activate_immediately(queue, new_entry("X"), T0)
        y = await store.add_to_queue(queue, new_entry("Y"), T0)
        z = await store.add_to_queue(queue, new_entry("Z"), T0)
        now = T0 + timedelta(hours=6)

        assert store.get_queue_position(queue, z.business_id, now) == 2
        assert store.get_queue_position(queue, x.business_id, now) is None
        assert store.get_estimated_start_time(queue, y.business_id, now) == T0 + DAY
        assert store.get_estimated_start_time(queue, z.business_id, now) == T0 + 2 * DAY
        assert store.is_business_active(queue, x.business_id)
        assert not store.is_business_active(queue, y.business_id)
        assert store.get_current_boost_time_remaining(queue, now) == timedelta(hours=18)

    async def test_no_time_remaining_when_slot_free(self, store, category):
        queue = await store.get_or_create(category.id)
        assert store.get_current_boost_time_remaining(queue, T0) is None


class TestPersistence:
    async def test_state_survives_reload(self, store, store_session, category, fetch_queue):
        queue = await store.get_or_create(category.id)
        x = await store.activate_immediately(queue, new_entry("X"), T0)
        y = await store.add_to_queue(queue, new_entry("Y"), T0)
        await store_session.commit()

        reloaded = await fetch_queue(category.id)
        assert reloaded.active_business_id == x.business_id
        assert [e.business_id for e in reloaded.pending_entries] == [y.business_id]
        assert find_open_entry(reloaded, y.business_id).position == 1

    async def test_stale_version_is_a_conflict(self, session_factory, category):
        async with session_factory() as setup:
            await CategoryQueueStore(setup, BOOST_DURATION).get_or_create(category.id)
            await setup.commit()

        async with session_factory() as first, session_factory() as second:
            first_store = CategoryQueueStore(first, BOOST_DURATION)
            second_store = CategoryQueueStore(second, BOOST_DURATION)
            first_queue = await first_store.get(category.id)
            second_queue = await second_store.get(category.id)

            await first_store.activate_immediately(first_queue, new_entry("X"), T0)
            await first.commit()

            with pytest.raises(ConcurrencyConflictError):
                await second_store.add_to_queue(second_queue, new_entry("Y"), T0)


class TestInvariants:
    async def test_consistent_queue_has_no_violations(self, store, category):
        queue = await store.get_or_create(category.id)
        await store.activate_immediately(queue, new_entry("X"), T0)
        await store.add_to_queue(queue, new_entry("Y"), T0)
        assert verify_invariants(queue, BOOST_DURATION) == []

    async def test_detects_corrupted_slot(self, store, category):
        queue = await store.get_or_create(category.id)
        x = await store.activate_immediately(queue, new_entry("X"), T0)
        queue.active_business_id = uuid.uuid4()
        x.boost_end_time = T0 + timedelta(hours=23)

        violations = verify_invariants(queue, BOOST_DURATION)
        assert any("does not match" in v for v in violations)
        assert any("is not" in v for v in violations)

    async def test_fifo_order_across_cycles(self, store, category):
        queue = await store.get_or_create(category.id)
        first = await store.activate_immediately(queue, new_entry("A"), T0)
        waiting = [await store.add_to_queue(queue, new_entry(name), T0) for name in ("B", "C", "D")]

        activated = [first.business_id]
        now = T0
        for _ in waiting:
            now = now + DAY
            await store.expire_current_boost(queue, now)
            promoted = await store.activate_next(queue, now)
            activated.append(promoted.business_id)
            assert verify_invariants(queue, BOOST_DURATION) == []

        assert activated == [first.business_id] + [e.business_id for e in waiting]
