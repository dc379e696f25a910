"""
Timestamp utilities for consistent time handling across the system.

All timestamps are timezone-aware UTC datetimes in memory and ISO 8601 strings in the stores.
"""

from datetime import datetime, timezone
from typing import Optional, Union

from ..models.errors import ValidationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as an ISO 8601 UTC string.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Parse a stored or user-supplied timestamp.

    Args:
        value: ISO 8601 string (a trailing 'Z' is accepted), epoch seconds, datetime or None

    Returns:
        Aware UTC datetime, or None when value is None or blank

    Raises:
        ValidationError: If the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValidationError(f'Invalid timestamp: {value!r}')
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value).strip()
    if not text:
        return None
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f'Invalid ISO 8601 timestamp: {value!r}')
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
