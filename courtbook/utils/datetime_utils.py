"""
Datetime utility functions.
Provides timezone-aware "now" helpers and venue-local calendar helpers.
"""

from datetime import date, datetime, time
from typing import Optional
import pytz

from courtbook.utils.constants import DEFAULT_VENUE_TIMEZONE


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def get_timezone(tz_name: Optional[str]):
    """Resolve a venue timezone name, falling back to the default venue timezone."""
    try:
        return pytz.timezone(tz_name or DEFAULT_VENUE_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_VENUE_TIMEZONE)


def venue_local_now(tz_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Current wall-clock time at a venue.

    Args:
        tz_name: IANA timezone of the venue (e.g. "Asia/Kolkata")
        now: Optional aware datetime to convert instead of the real clock

    Returns:
        Aware datetime in the venue's timezone
    """
    current = now or utcnow()
    if current.tzinfo is None:
        current = pytz.UTC.localize(current)
    return current.astimezone(get_timezone(tz_name))


def parse_slot_time(slot: str) -> time:
    """
    Parse a schedule slot label ("HH:MM") into a time.

    Raises:
        ValueError: If the label is not a valid HH:MM string
    """
    return datetime.strptime(slot, "%H:%M").time()


def is_weekend(day: date) -> bool:
    """Saturday and Sunday are priced as weekend days."""
    return day.weekday() >= 5
