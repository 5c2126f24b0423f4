"""Timezone helpers for event-local dates and normalized timestamps."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, time as dt_time, timedelta
from typing import Optional, Union

import pytz

__all__ = [
    "utcnow",
    "to_local",
    "to_date",
    "to_utc_iso",
    "parse_timestamp",
    "next_day_cutoff",
]

logger = logging.getLogger(__name__)

DEFAULT_TZ_ENV = "DEFAULT_TZ"
DEFAULT_TZ_FALLBACK = "America/Montreal"

_tz_cache_name: Optional[str] = None
_tz_cache = pytz.timezone(DEFAULT_TZ_FALLBACK)

DateLike = Union[str, int, float, datetime, date]


def _load_timezone(name: str) -> pytz.BaseTzInfo:
    """Return a pytz timezone, falling back to the default on errors."""
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning(
            "Unknown timezone %s, falling back to %s", name, DEFAULT_TZ_FALLBACK
        )
        return pytz.timezone(DEFAULT_TZ_FALLBACK)


def _current_timezone() -> pytz.BaseTzInfo:
    """Return the timezone configured through ``DEFAULT_TZ`` (cached)."""
    global _tz_cache_name, _tz_cache  # pylint: disable=global-statement

    name = os.getenv(DEFAULT_TZ_ENV, DEFAULT_TZ_FALLBACK)
    if name != _tz_cache_name:
        _tz_cache = _load_timezone(name)
        _tz_cache_name = name
    return _tz_cache


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(pytz.UTC)


def parse_timestamp(value: DateLike, fmt: Optional[str] = None) -> datetime:
    """Coerce common input shapes into a timezone-aware UTC datetime.

    Integers and floats are read as epoch milliseconds, which is how the
    ticketing API reports ``start_date`` and check-in times.
    """
    if isinstance(value, bool):
        raise TypeError("Boolean is not a timestamp")
    if isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=pytz.UTC)
    elif isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, dt_time.min)
    elif isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("Empty datetime string")
        if value.isdigit():
            return parse_timestamp(int(value))
        if fmt:
            dt = datetime.strptime(value, fmt)
        else:
            for pattern in (
                "%Y-%m-%d %H:%M:%S",
                "%Y-%m-%dT%H:%M:%S.%fZ",
                "%Y-%m-%dT%H:%M:%S.%f%z",
                "%Y-%m-%dT%H:%M:%SZ",
                "%Y-%m-%dT%H:%M:%S%z",
                "%Y-%m-%d",
            ):
                try:
                    dt = datetime.strptime(value, pattern)
                    break
                except ValueError:
                    continue
            else:
                try:
                    normalized = value.replace("Z", "+00:00")
                    dt = datetime.fromisoformat(normalized)
                except ValueError as exc:
                    raise ValueError(f"Unsupported datetime string: {value}") from exc
    else:
        raise TypeError(f"Unsupported type for datetime conversion: {type(value)!r}")

    if dt.tzinfo is None:
        dt = pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def to_local(value: DateLike, fmt: Optional[str] = None) -> datetime:
    """Convert the provided value to a timezone-aware datetime in the event timezone."""
    return parse_timestamp(value, fmt).astimezone(_current_timezone())


def to_date(value: DateLike, fmt: Optional[str] = None) -> date:
    """Convert the provided value to a calendar date in the event timezone."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, str) and fmt is None and len(value.strip()) == 10:
        # A bare calendar date is already local.
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%d").date()
        except ValueError:
            pass
    return to_local(value, fmt).date()


def to_utc_iso(value: Optional[DateLike]) -> Optional[str]:
    """Return ``value`` as a canonical UTC ISO-8601 string (millisecond precision).

    Two spellings of the same instant always normalize to the same string,
    which is what change detection compares. Unparsable input yields ``None``.
    """
    if value is None or value == "":
        return None
    try:
        dt = parse_timestamp(value)
    except (TypeError, ValueError):
        logger.debug("Unparsable timestamp %r", value)
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def next_day_cutoff(value: DateLike, hour: int = 4) -> datetime:
    """Return ``hour`` o'clock local time on the day after ``value``.

    An event is considered over once this moment has passed.
    """
    tz = _current_timezone()
    local_day = to_date(value) + timedelta(days=1)
    return tz.localize(datetime.combine(local_day, dt_time(hour=hour)))
