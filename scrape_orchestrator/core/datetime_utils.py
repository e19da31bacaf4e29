"""Centralized datetime utilities for consistent timezone handling.

All persisted timestamps are naive UTC (SQLAlchemy models store naive UTC).
Schedules are evaluated in the definition's own IANA timezone, so helpers
here convert between the two.

Usage:
    from scrape_orchestrator.core.datetime_utils import utc_now, get_cutoff

    now = utc_now()
    cutoff = get_cutoff(days=7)
    metrics = query.filter(PerformanceMetric.created_at > cutoff)
"""

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "America/Sao_Paulo"


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Returns naive datetime for database compatibility.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def aware_utc_now() -> datetime:
    """Get current UTC time as an aware datetime (for trigger arithmetic)."""
    return datetime.now(UTC)


def get_cutoff(hours: int = 0, days: int = 0, seconds: float = 0) -> datetime:
    """Get cutoff datetime for filtering queries.

    Args:
        hours: Hours to subtract from now
        days: Days to subtract from now
        seconds: Seconds to subtract from now

    Returns:
        Naive UTC datetime representing the cutoff point
    """
    delta = timedelta(hours=hours, days=days, seconds=seconds)
    return utc_now() - delta


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be aware or naive)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime, or convert an aware one to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def is_valid_timezone(tz_name: str) -> bool:
    """Check if a timezone name is valid IANA identifier.

    Args:
        tz_name: Timezone string (e.g., "America/Sao_Paulo")

    Returns:
        True if valid IANA timezone
    """
    try:
        ZoneInfo(tz_name)
        return True
    except (KeyError, ValueError):
        return False


def normalize_timezone(tz_name: str | None, default: str = DEFAULT_TIMEZONE) -> str:
    """Return tz_name if it is a valid IANA timezone, otherwise the default."""
    if tz_name and is_valid_timezone(tz_name):
        return tz_name
    return default


def duration_ms(started_at: datetime | None, completed_at: datetime | None) -> int | None:
    """Milliseconds between two naive UTC timestamps, None if either is missing."""
    if started_at is None or completed_at is None:
        return None
    return int((completed_at - started_at).total_seconds() * 1000)
