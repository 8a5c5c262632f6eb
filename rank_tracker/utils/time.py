"""Time utilities for reference-timezone calendar days."""
from datetime import date, datetime, timedelta, timezone
from typing import Optional
import pytz


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def reference_today(timezone_str: str = "UTC", now: Optional[datetime] = None) -> date:
    """
    Get the current calendar day in the reference timezone.

    Quota days roll over at midnight of this timezone, not at midnight UTC.

    Args:
        timezone_str: IANA timezone name (default: UTC)
        now: Aware datetime to convert instead of the current time

    Returns:
        Calendar date in the reference timezone
    """
    tz = pytz.timezone(timezone_str)
    if now is None:
        now = utc_now()
    return now.astimezone(tz).date()


def start_of_reference_day(day: date, timezone_str: str = "UTC") -> datetime:
    """
    Get the UTC instant at which a reference-timezone day begins.

    Args:
        day: Calendar day in the reference timezone
        timezone_str: IANA timezone name

    Returns:
        Aware UTC datetime of local midnight
    """
    tz = pytz.timezone(timezone_str)
    local_midnight = tz.localize(datetime(day.year, day.month, day.day))
    return local_midnight.astimezone(pytz.utc)


def due_cutoff(interval_hours: int, now: Optional[datetime] = None) -> datetime:
    """Keywords last checked before this instant are due for another check."""
    if now is None:
        now = utc_now()
    return now - timedelta(hours=interval_hours)
