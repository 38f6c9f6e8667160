"""
UTC time helpers shared by the store, the state machine and the client.
"""

from datetime import UTC, datetime, timedelta

from jobqueue.constants import FOREVER_DATE


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_ms(moment: datetime, milliseconds: float) -> datetime:
    """
    Add a millisecond offset, clamping at the far-future sentinel.

    Args:
        moment: Base time.
        milliseconds: Offset to add; may be very large for exponential backoff.

    Returns:
        The shifted time, never later than FOREVER_DATE.
    """
    try:
        shifted = moment + timedelta(milliseconds=milliseconds)
    except OverflowError:
        return FOREVER_DATE
    return min(shifted, FOREVER_DATE)


def ms_between(start: datetime, end: datetime) -> float:
    """Milliseconds from start to end."""
    return (end - start).total_seconds() * 1000
