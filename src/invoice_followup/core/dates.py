"""
Calendar day calculations.

Reminder cadences are expressed in calendar days relative to an
invoice due date. Every datetime handled by the service is UTC-aware.
"""

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union


def now_utc() -> datetime:
    """Get the current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Union[datetime, date]) -> datetime:
    """
    Normalize a date or datetime to an aware UTC datetime.

    Naive datetimes are assumed to already be UTC. Plain dates become
    midnight UTC.
    """
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: object) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts datetimes (including Firestore's DatetimeWithNanoseconds),
    dates and ISO-8601 strings. Returns None for anything else.
    """
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def add_days(start: datetime, days: int) -> datetime:
    """Add a number of calendar days, keeping the time of day."""
    return ensure_utc(start) + timedelta(days=days)


def days_overdue(due_date: datetime, now: Optional[datetime] = None) -> int:
    """
    Number of started days since the due date, never negative.

    Partial days count as a full day, so an invoice due yesterday at
    midnight is one day overdue for the whole of today.
    """
    current = ensure_utc(now or now_utc())
    elapsed = (current - ensure_utc(due_date)).total_seconds()
    return max(0, math.ceil(elapsed / 86400))
