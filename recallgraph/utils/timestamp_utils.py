"""
Timestamp utilities for consistent time handling across the system.

All timestamps are timezone-aware UTC and persisted as ISO-8601 strings so that
lexicographic order matches chronological order in the graph store.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to a UTC ISO-8601 string with microsecond precision.

    Args:
        value: datetime to convert; naive values are assumed to be UTC

    Returns:
        ISO string, or None if value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string written by to_iso.

    Args:
        value: ISO string (optional)

    Returns:
        Timezone-aware datetime, or None for empty input
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
