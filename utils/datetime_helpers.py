"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: All model timestamp columns are timezone-naive (DateTime(timezone=False))
and hold UTC. This module provides the helpers that keep timezone-aware values
out of those columns, plus the subscription window arithmetic.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


# Fixed-length tiers; "monthly" uses calendar-month arithmetic instead
PACKAGE_DURATIONS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        # Convert to UTC and remove timezone info
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    This is the recommended way to get timestamps for model fields.

    Returns:
        Current UTC time without timezone info
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_calendar_months(dt: datetime, months: int) -> datetime:
    """
    Add calendar months, keeping the time of day.

    When the target month is shorter than dt's day of month, the result is
    clamped to that month's last day:

        >>> add_calendar_months(datetime(2025, 1, 31), 1)
        datetime.datetime(2025, 2, 28, 0, 0)
        >>> add_calendar_months(datetime(2024, 1, 31), 1)
        datetime.datetime(2024, 2, 29, 0, 0)
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))


def calculate_end_date(start: datetime, package: str) -> datetime:
    """
    End of a subscription window for the given tier.

    daily = +1 day, weekly = +7 days, monthly = +1 calendar month.

    Raises:
        ValueError: unknown package
    """
    if package == "monthly":
        return add_calendar_months(start, 1)
    try:
        return start + PACKAGE_DURATIONS[package]
    except KeyError:
        raise ValueError(f"Unknown subscription package: {package}")


def format_time_remaining(end: datetime, now: Optional[datetime] = None) -> str:
    """Human-readable time left until end, e.g. '2 days, 3 hours'"""
    now = now or get_naive_utc_now()
    remaining = ensure_naive_datetime(end) - now
    if remaining.total_seconds() <= 0:
        return "expired"

    days = remaining.days
    hours = remaining.seconds // 3600
    minutes = (remaining.seconds % 3600) // 60

    if days > 0:
        return f"{days} day{'s' if days != 1 else ''}, {hours} hour{'s' if hours != 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours != 1 else ''}, {minutes} minute{'s' if minutes != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def to_unix_timestamp(dt: datetime) -> int:
    """Naive-UTC datetime to a unix timestamp (Telegram API date fields)"""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())
