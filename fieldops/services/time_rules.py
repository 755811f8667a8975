"""
Time rules.
Normalises clock readings to timezone-aware UTC and resolves local work dates.
"""
from datetime import date, datetime
from typing import Optional
import pytz
from ..config import settings


def ensure_utc(dt: datetime) -> datetime:
    """
    Return a timezone-aware UTC datetime.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (timezone-aware or naive)
        timezone_str: Timezone string (default from settings)

    Returns:
        Local datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str or settings.tz_default)
    return ensure_utc(utc_datetime).astimezone(tz)


def local_date(dt: datetime, timezone_str: Optional[str] = None) -> date:
    """Calendar date of dt in the given (or default) timezone."""
    return utc_to_local(dt, timezone_str).date()


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)
