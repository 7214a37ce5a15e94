"""Shared utilities across the telemetry core."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# Device clocks before this are unset RTCs, not real readings.
_EARLIEST_PLAUSIBLE = datetime(2020, 1, 1, tzinfo=timezone.utc)
_MAX_FUTURE_SKEW = timedelta(minutes=5)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime to ISO string with UTC timezone."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_device_timestamp(value: Any) -> Optional[datetime]:
    """Parse a device-supplied timestamp.

    Accepts epoch seconds, epoch milliseconds or an ISO-8601 string.
    Returns None when the value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        # millisecond epochs are 13 digits
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def is_plausible_timestamp(dt: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if dt is None:
        return False
    now = now or utcnow()
    return _EARLIEST_PLAUSIBLE <= dt <= now + _MAX_FUTURE_SKEW
