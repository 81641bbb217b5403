"""
Boost entry state machine.

    PENDING -> ACTIVE, CANCELED
    ACTIVE  -> EXPIRED, CANCELED
    EXPIRED -> (terminal)
    CANCELED -> (terminal)

All status changes on a BoostQueueEntry go through ``transition`` so the
single-occupancy and FIFO rules are enforced in one place.
"""
from datetime import datetime, timedelta

from app.exceptions import InvalidTransitionError
from app.models.boost_queue import BoostQueueEntry, BoostStatus

ALLOWED_TRANSITIONS: dict[BoostStatus, frozenset[BoostStatus]] = {
    BoostStatus.PENDING: frozenset({BoostStatus.ACTIVE, BoostStatus.CANCELED}),
    BoostStatus.ACTIVE: frozenset({BoostStatus.EXPIRED, BoostStatus.CANCELED}),
    BoostStatus.EXPIRED: frozenset(),
    BoostStatus.CANCELED: frozenset(),
}


def is_terminal(status: BoostStatus) -> bool:
    return not ALLOWED_TRANSITIONS[BoostStatus(status)]


def can_transition(current: BoostStatus, target: BoostStatus) -> bool:
    return BoostStatus(target) in ALLOWED_TRANSITIONS[BoostStatus(current)]


def transition(
    entry: BoostQueueEntry,
    target: BoostStatus,
    now: datetime,
    duration: timedelta | None = None,
) -> BoostQueueEntry:
    """
    Moves ``entry`` to ``target`` and stamps the matching timestamps.
    Activation requires ``duration``; the window is always exactly that long.
    """
    current = BoostStatus(entry.status)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move boost for business {entry.business_id} from {current.value} to {BoostStatus(target).value}."
        )

    if target == BoostStatus.ACTIVE:
        if duration is None:
            raise ValueError("Activation requires a boost duration.")
        entry.boost_start_time = now
        entry.boost_end_time = now + duration
        entry.estimated_start_time = None
        entry.estimated_end_time = None
    elif target == BoostStatus.EXPIRED:
        entry.expired_at = now
    elif target == BoostStatus.CANCELED:
        entry.canceled_at = now
        entry.estimated_start_time = None
        entry.estimated_end_time = None

    # Positions only rank pending entries
    entry.position = None
    entry.status = BoostStatus(target)
    return entry
