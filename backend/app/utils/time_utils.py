"""
Timestamp helpers.

All persisted timestamps are naive UTC datetimes.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)