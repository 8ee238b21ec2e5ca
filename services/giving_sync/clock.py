"""
UTC time helpers.

All persisted timestamps are UTC. SQLite hands back naive datetimes, so
values read from storage go through ``as_utc`` before being compared.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Returns None for empty or unparsable input.

    Examples:
        >>> parse_iso("2025-03-01T10:00:00Z").isoformat()
        '2025-03-01T10:00:00+00:00'
        >>> parse_iso("not a date") is None
        True
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
