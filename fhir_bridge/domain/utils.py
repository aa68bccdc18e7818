"""Domain Utilities - timestamp helpers.

The store keeps naive UTC timestamps; external resources carry
timezone-qualified instants.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as naive UTC, truncated to milliseconds."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_store_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert a datetime to naive UTC (naive inputs are assumed to be UTC)."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_instant(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive store timestamp."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
