"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime] = None) -> str:
    """Convert a datetime to an ISO-8601 string.

    Args:
        value: datetime to format (optional, uses current time if None)

    Returns:
        ISO-8601 timestamp string
    """
    if value is None:
        value = utc_now()
    return value.isoformat()


def from_iso(value: str) -> datetime:
    """Parse an ISO-8601 string produced by to_iso."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def age_seconds(value: datetime, now: Optional[datetime] = None) -> float:
    """Seconds elapsed since value."""
    now = now or utc_now()
    return (now - value).total_seconds()
