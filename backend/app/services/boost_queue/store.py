"""
Category Queue Store.

Durable per-category source of truth for the FIFO boost queue and its single
active slot. Mutations operate on a loaded ``CategoryQueue`` and are flushed
immediately; callers are expected to hold the category lock and to commit.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.exceptions import CategoryNotFoundError, ConcurrencyConflictError, DuplicateEntryError, EntryNotFoundError
from app.models import BoostQueueEntry, BoostStatus, CategoryQueue
from app.repositories.business import CategoryRepository
from app.repositories.category_queue import CategoryQueueRepository
from app.services.boost_queue.state_machine import transition
from app.services.boost_queue.timing import DEFAULT_BOOST_DURATION, estimate_window, time_remaining

logger = logging.getLogger(__name__)


def find_open_entry(queue: CategoryQueue, business_id: uuid.UUID) -> Optional[BoostQueueEntry]:
    return next((e for e in queue.entries if e.business_id == business_id and e.is_open), None)


def verify_invariants(queue: CategoryQueue, duration: timedelta = DEFAULT_BOOST_DURATION) -> List[str]:
    """
    Returns a description of every queue invariant that does not hold.
    An empty list means the queue is consistent.
    """
    violations = []
    active = [e for e in queue.entries if e.status == BoostStatus.ACTIVE]

    if len(active) > 1:
        violations.append(f"{len(active)} active entries in category {queue.category_name}")
    if active and active[0].business_id != queue.active_business_id:
        violations.append("active entry does not match the occupied slot")
    if not active and queue.active_business_id is not None:
        violations.append("slot is occupied but no entry is active")

    seen = set()
    for entry in queue.entries:
        if not entry.is_open:
            continue
        if entry.business_id in seen:
            violations.append(f"business {entry.business_id} has more than one open entry")
        seen.add(entry.business_id)

    for entry in active:
        if entry.boost_end_time - entry.boost_start_time != duration:
            violations.append(f"active window for business {entry.business_id} is not {duration}")

    if active:
        later_pending = [e for e in queue.entries if e.status == BoostStatus.PENDING and e.sequence < active[0].sequence]
        if later_pending:
            violations.append("an entry enqueued earlier is still pending behind the active entry")

    return violations


class CategoryQueueStore:
    def __init__(
        self,
        session: AsyncSession,
        boost_duration: timedelta = DEFAULT_BOOST_DURATION,
        category_queue_repository_class=CategoryQueueRepository,
        category_repository_class=CategoryRepository,
    ):
        self.session = session
        self.boost_duration = boost_duration
        self.repo = category_queue_repository_class(session)
        self.categories = category_repository_class(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def get(self, category_id: uuid.UUID) -> Optional[CategoryQueue]:
        return await self.repo.get_by_category(category_id)

    async def get_or_create(self, category_id: uuid.UUID) -> CategoryQueue:
        """
        Fetches the queue for a category, creating an empty one if absent.
        The unique key on ``category_id`` turns a lost creation race into a
        ConcurrencyConflictError instead of a duplicate queue.
        """
        queue = await self.repo.get_by_category(category_id)
        if queue:
            return queue

        category = await self.categories.get(category_id)
        if category is None or not category.is_active:
            raise CategoryNotFoundError(f"Category {category_id} not found or not configured for boosts.")

        queue = CategoryQueue(
            id=uuid.uuid4(),
            category_id=category.id,
            category_name=category.name,
            next_sequence=1,
            entries=[],
        )
        self.session.add(queue)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(f"Boost queue for category {category.name} was created concurrently: {e}")
            raise ConcurrencyConflictError(f"Boost queue for category {category.name} was created concurrently.") from e

        logger.info(f"Created boost queue for category {category.name}")
        return queue

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_to_queue(self, queue: CategoryQueue, entry: BoostQueueEntry, now: datetime) -> BoostQueueEntry:
        if find_open_entry(queue, entry.business_id):
            raise DuplicateEntryError(
                f"Business {entry.business_id} already has a pending or active boost in {queue.category_name}."
            )

        if entry.id is None:
            entry.id = uuid.uuid4()
        entry.status = BoostStatus.PENDING
        entry.sequence = self._next_sequence(queue)
        entry.created_at = entry.created_at or now

        ahead = len(queue.pending_entries)
        entry.position = ahead + 1
        entry.estimated_start_time, entry.estimated_end_time = estimate_window(
            self._slot_free_at(queue, now), ahead, self.boost_duration
        )

        queue.entries.append(entry)
        self._touch(queue, now)
        await self._flush()

        logger.info(
            f"Queued boost for {entry.business_name} in {queue.category_name} at position {entry.position}, "
            f"estimated start {entry.estimated_start_time.isoformat()}"
        )
        return entry

    async def activate_immediately(self, queue: CategoryQueue, entry: BoostQueueEntry, now: datetime) -> BoostQueueEntry:
        """
        First-occupant path: the slot is free and nobody is waiting, so the
        entry is created directly as active.
        """
        if find_open_entry(queue, entry.business_id):
            raise DuplicateEntryError(
                f"Business {entry.business_id} already has a pending or active boost in {queue.category_name}."
            )
        if queue.has_active or queue.pending_entries:
            raise ConcurrencyConflictError(f"Boost slot in {queue.category_name} is no longer free.")

        if entry.id is None:
            entry.id = uuid.uuid4()
        entry.status = BoostStatus.PENDING
        entry.sequence = self._next_sequence(queue)
        entry.created_at = entry.created_at or now
        queue.entries.append(entry)

        transition(entry, BoostStatus.ACTIVE, now, self.boost_duration)
        self._occupy_slot(queue, entry)
        self._touch(queue, now)
        await self._flush()

        logger.info(f"Activated boost for {entry.business_name} in {queue.category_name} until {entry.boost_end_time.isoformat()}")
        return entry

    async def activate_next(self, queue: CategoryQueue, now: datetime) -> Optional[BoostQueueEntry]:
        """
        Promotes the head of the pending list. No-op when the slot is taken or
        nothing is waiting.
        """
        if queue.has_active:
            return None

        pending = queue.pending_entries
        if not pending:
            return None

        head = pending[0]
        transition(head, BoostStatus.ACTIVE, now, self.boost_duration)
        self._occupy_slot(queue, head)
        self._recompute_pending(queue, now)
        self._touch(queue, now)
        await self._flush()

        logger.info(f"Promoted {head.business_name} to active boost in {queue.category_name} until {head.boost_end_time.isoformat()}")
        return head

    async def expire_current_boost(self, queue: CategoryQueue, now: datetime) -> Optional[BoostQueueEntry]:
        """
        Marks the active entry expired and frees the slot. Promotion of the
        next entry is left to the caller.
        """
        if not queue.has_active:
            return None

        entry = queue.active_entry
        if entry is None:
            logger.error(f"Slot in {queue.category_name} references missing entry {queue.active_entry_id}; clearing it.")
        else:
            transition(entry, BoostStatus.EXPIRED, now)

        self._clear_slot(queue)
        self._recompute_pending(queue, now)
        self._touch(queue, now)
        await self._flush()

        if entry:
            logger.info(f"Expired boost for {entry.business_name} in {queue.category_name}")
        return entry

    async def remove_from_queue(self, queue: CategoryQueue, business_id: uuid.UUID, now: datetime) -> BoostQueueEntry:
        """
        Cancels the business's open entry. Cancelling the active entry frees
        the slot; the caller is responsible for promoting the next entry.
        Later pending entries move up one position and are re-estimated.
        """
        entry = find_open_entry(queue, business_id)
        if entry is None:
            raise EntryNotFoundError(f"Business {business_id} has no pending or active boost in {queue.category_name}.")

        was_active = entry.status == BoostStatus.ACTIVE
        transition(entry, BoostStatus.CANCELED, now)
        if was_active:
            self._clear_slot(queue)

        self._recompute_pending(queue, now)
        self._touch(queue, now)
        await self._flush()

        logger.info(f"Removed {entry.business_name} ({'active' if was_active else 'pending'}) from {queue.category_name} queue")
        return entry

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    def pending_projection(self, queue: CategoryQueue, now: datetime) -> List[Tuple[BoostQueueEntry, int, datetime, datetime]]:
        """
        (entry, position, estimated_start, estimated_end) for every pending
        entry, derived from the current state rather than stored values.
        """
        base = self._slot_free_at(queue, now)
        projection = []
        for index, entry in enumerate(queue.pending_entries):
            start, end = estimate_window(base, index, self.boost_duration)
            projection.append((entry, index + 1, start, end))
        return projection

    def get_queue_position(self, queue: CategoryQueue, business_id: uuid.UUID, now: datetime) -> Optional[int]:
        for entry, position, _, _ in self.pending_projection(queue, now):
            if entry.business_id == business_id:
                return position
        return None

    def get_estimated_start_time(self, queue: CategoryQueue, business_id: uuid.UUID, now: datetime) -> Optional[datetime]:
        for entry, _, start, _ in self.pending_projection(queue, now):
            if entry.business_id == business_id:
                return start
        return None

    def is_business_active(self, queue: CategoryQueue, business_id: uuid.UUID) -> bool:
        return queue.active_business_id is not None and queue.active_business_id == business_id

    def get_current_boost_time_remaining(self, queue: CategoryQueue, now: datetime) -> Optional[timedelta]:
        if not queue.has_active:
            return None
        return time_remaining(now, queue.boost_end_time)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _next_sequence(self, queue: CategoryQueue) -> int:
        sequence = queue.next_sequence or 1
        queue.next_sequence = sequence + 1
        return sequence

    def _slot_free_at(self, queue: CategoryQueue, now: datetime) -> datetime:
        if queue.has_active and queue.boost_end_time and queue.boost_end_time > now:
            return queue.boost_end_time
        return now

    def _recompute_pending(self, queue: CategoryQueue, now: datetime) -> None:
        for entry, position, start, end in self.pending_projection(queue, now):
            entry.position = position
            entry.estimated_start_time = start
            entry.estimated_end_time = end

    def _occupy_slot(self, queue: CategoryQueue, entry: BoostQueueEntry) -> None:
        queue.active_entry_id = entry.id
        queue.active_business_id = entry.business_id
        queue.active_subscription_id = entry.subscription_id
        queue.boost_start_time = entry.boost_start_time
        queue.boost_end_time = entry.boost_end_time

    def _clear_slot(self, queue: CategoryQueue) -> None:
        queue.active_entry_id = None
        queue.active_business_id = None
        queue.active_subscription_id = None
        queue.boost_start_time = None
        queue.boost_end_time = None

    def _touch(self, queue: CategoryQueue, now: datetime) -> None:
        # Always dirties the queue row so its version is checked and bumped
        queue.last_updated = now

    async def _flush(self) -> None:
        try:
            await self.session.flush()
        except (StaleDataError, IntegrityError) as e:
            logger.warning(f"Boost queue update lost a race: {e}")
            raise ConcurrencyConflictError() from e
