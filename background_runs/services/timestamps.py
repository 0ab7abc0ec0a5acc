"""Timestamp helpers.

Timestamps are persisted as naive UTC datetimes. These helpers convert aware
datetimes and ISO-8601 strings into that form.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Drop tzinfo after converting to UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a datetime or ISO-8601 string. Returns None if missing or unparsable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None

    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return to_naive_utc(parsed)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Render a stored naive UTC datetime as ISO-8601 with a Z suffix."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"
