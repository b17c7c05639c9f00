"""
Datetime formatting utilities
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime (the database stores naive UTC)
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_from(start: datetime, hours: Optional[float]) -> Optional[datetime]:
    """Deadline `hours` after `start`, or None when no timeout is configured"""
    if not hours:
        return None
    return start + timedelta(hours=hours)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC"""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
