"""Datetime helpers shared by the store, the engine and the API.

The service keeps every timestamp as a *naive UTC* ``datetime`` truncated to
whole seconds, which is what the SQL columns hold. These helpers are the only
place that converts between that representation, aware datetimes, ISO-8601
strings and epoch seconds.
"""
from __future__ import annotations

import datetime as _dt
from typing import Union

from dateutil.parser import isoparse as _isoparse

__all__ = ["parse_iso8601", "utcnow", "to_naive_utc", "from_epoch_seconds"]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    """Return *dt* converted to UTC and TZ-aware."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def parse_iso8601(value: Union[str, _dt.datetime]) -> _dt.datetime:
    """Parse *value* into a timezone-aware UTC datetime.

    Accepts ISO-8601 strings or datetime objects. If *value* is already a
    datetime, it will be normalised to UTC.
    """
    if isinstance(value, _dt.datetime):
        return _ensure_utc(value)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value)
    except Exception as exc:
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return _ensure_utc(dt)


def to_naive_utc(value: Union[str, _dt.datetime]) -> _dt.datetime:
    """Normalise to the storage representation (naive UTC, whole seconds)."""
    return parse_iso8601(value).replace(tzinfo=None, microsecond=0)


def utcnow() -> _dt.datetime:
    """Current time in the storage representation."""
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None, microsecond=0)


def from_epoch_seconds(seconds: Union[int, float]) -> _dt.datetime:
    return _dt.datetime.fromtimestamp(int(seconds), tz=_dt.timezone.utc).replace(tzinfo=None)
