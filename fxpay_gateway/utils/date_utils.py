"""Date manipulation utilities"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime uses"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """First and last instant of a calendar day (inclusive)"""
    return datetime.combine(day, time.min), datetime.combine(day, time.max)


def previous_day_bounds(now: datetime | None = None) -> Tuple[datetime, datetime]:
    """Default settlement period: the whole previous calendar day"""
    now = now or utcnow()
    return day_bounds(now.date() - timedelta(days=1))
