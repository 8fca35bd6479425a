"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Any, Optional

ISO_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to fixed-width ISO-8601 UTC.

    Fixed width keeps lexicographic order equal to chronological order, which both
    backends rely on when sorting or comparing string timestamps.

    Args:
        value: datetime to serialize (naive values are treated as UTC)

    Returns:
        ISO string, or None if value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into a timezone-aware UTC datetime.

    Accepts ISO-8601 strings (with or without 'Z'), datetime objects and unix epoch
    seconds (int, float or numeric string).

    Args:
        value: Stored timestamp

    Returns:
        datetime object, or None if value is empty
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
