"""
UTC timestamp helpers.

SQLite hands back naive datetimes for timezone-aware columns, so every
comparison goes through ensure_utc().
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_timestamp(previous: Optional[datetime]) -> datetime:
    """
    Return a timestamp strictly later than `previous`.

    Two writes inside the same clock tick (or a clock that stepped back)
    still produce increasing updated_at values.
    """
    now = utcnow()
    previous = ensure_utc(previous)
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now
