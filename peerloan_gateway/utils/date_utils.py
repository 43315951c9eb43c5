"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_hours(from_time: datetime, hours: int) -> datetime:
    return from_time + timedelta(hours=hours)
