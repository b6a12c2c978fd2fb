"""
CryptoScope — Date helpers
All billing instants are UTC. Some drivers (SQLite) hand back naive values,
so comparisons go through `as_utc`.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(seconds: Optional[int]) -> Optional[datetime]:
    """Convert a provider epoch-seconds field; missing or zero stays None."""
    if not seconds:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)
