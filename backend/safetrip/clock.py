from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable

# All timestamps are stored as naive UTC
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Normalise an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def parse_datetime(dt_value: Any) -> datetime | None:
    """Parse datetime from string or return as-is."""
    if dt_value is None:
        return None
    if isinstance(dt_value, str):
        return to_naive_utc(datetime.fromisoformat(dt_value.replace(' ', 'T').replace('Z', '+00:00')))
    return to_naive_utc(dt_value)


def to_iso8601(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()
