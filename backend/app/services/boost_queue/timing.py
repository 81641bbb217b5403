"""
Pure time arithmetic for boost windows.

Every function takes ``now`` explicitly so admission, reconciliation and
refund logic share one clock and tests can inject synthetic times.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple

from app.utils.time_utils import utcnow

DEFAULT_BOOST_DURATION = timedelta(hours=24)

__all__ = [
    "DEFAULT_BOOST_DURATION",
    "utcnow",
    "boost_window",
    "is_window_elapsed",
    "usage_fraction",
    "time_remaining",
    "estimate_window",
    "time_until_activation",
]


def boost_window(start: datetime, duration: timedelta = DEFAULT_BOOST_DURATION) -> Tuple[datetime, datetime]:
    return start, start + duration


def is_window_elapsed(now: datetime, end: Optional[datetime]) -> bool:
    """A window is over once ``now`` reaches its end."""
    if end is None:
        return False
    return now >= end


def usage_fraction(now: datetime, start: datetime, end: datetime) -> float:
    """
    Fraction of the window already consumed, clamped to [0, 1].
    """
    total = (end - start).total_seconds()
    if total <= 0:
        return 1.0
    used = (now - start).total_seconds() / total
    return min(1.0, max(0.0, used))


def time_remaining(now: datetime, end: Optional[datetime]) -> Optional[timedelta]:
    if end is None:
        return None
    remaining = end - now
    return remaining if remaining > timedelta(0) else timedelta(0)


def estimate_window(
    base: datetime,
    entries_ahead: int,
    duration: timedelta = DEFAULT_BOOST_DURATION,
) -> Tuple[datetime, datetime]:
    """
    Projected window for a pending entry: ``base`` is when the slot frees up
    (end of the active boost, or now when the slot is empty) and every pending
    entry ahead occupies one full window.
    """
    start = base + duration * entries_ahead
    return start, start + duration


def time_until_activation(now: datetime, estimated_start: Optional[datetime]) -> Optional[dict]:
    """
    Countdown to an estimated start, broken into days/hours/minutes.
    Returns None without an estimate and a zero countdown once it has passed.
    """
    if estimated_start is None:
        return None

    diff = int((estimated_start - now).total_seconds())
    if diff <= 0:
        return {"total_seconds": 0, "days": 0, "hours": 0, "minutes": 0, "formatted": "0d 0h 0m"}

    days, rest = divmod(diff, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    return {
        "total_seconds": diff,
        "days": days,
        "hours": hours,
        "minutes": minutes,
        "formatted": f"{days}d {hours}h {minutes}m",
    }
