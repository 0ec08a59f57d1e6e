"""
Date and time helpers.

Zendesk expresses incremental export watermarks as unix seconds and
event timestamps as ISO 8601 strings in UTC.  These helpers convert
between the two and timezone-aware :class:`~datetime.datetime`
objects.  Naive datetimes are always assumed to be in UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Return ``dt`` as a timezone-aware datetime in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_unix(value: Union[datetime, int, float]) -> int:
    """Convert a datetime (or an existing unix value) to whole unix seconds."""
    if isinstance(value, datetime):
        return int(to_utc(value).timestamp())
    return int(value)


def from_unix(seconds: Union[int, float]) -> datetime:
    """Convert unix seconds to a UTC datetime, dropping any fractional part."""
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def parse_timestamp(value: Union[datetime, str, None]) -> datetime:
    """Parse an ISO 8601 timestamp into a UTC datetime.

    Strings ending with ``Z`` are treated as UTC.  ``None`` and the
    empty string parse to :data:`EPOCH`.
    """
    if value is None or value == "":
        return EPOCH
    if isinstance(value, datetime):
        return to_utc(value)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(value))
