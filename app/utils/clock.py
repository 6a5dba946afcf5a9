"""Single source of "now" for booking decisions.

All timestamps are naive UTC, matching the DateTime columns. Services call
``clock.utcnow()`` through the module so tests can freeze time in one place.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ms(value: int) -> timedelta:
    """Policy windows are configured in milliseconds."""
    return timedelta(milliseconds=value)
