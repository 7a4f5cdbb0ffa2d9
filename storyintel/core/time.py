"""Time helpers.

Every timestamp the engine stores or compares is timezone-aware UTC. Some
drivers (SQLite) hand back naive datetimes, so values read from the database
go through ``ensure_utc`` before any arithmetic.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Get current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to UTC, assuming UTC for naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_hours(dt: datetime, now: Optional[datetime] = None) -> float:
    """Age of ``dt`` in hours relative to ``now``; never negative."""
    now = ensure_utc(now) if now is not None else utc_now()
    delta = now - ensure_utc(dt)
    return max(0.0, delta.total_seconds() / 3600)


def hours_ago(hours: float, now: Optional[datetime] = None) -> datetime:
    """Cutoff timestamp ``hours`` before ``now``."""
    now = ensure_utc(now) if now is not None else utc_now()
    return now - timedelta(hours=hours)
