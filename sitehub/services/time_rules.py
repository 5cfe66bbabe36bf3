"""
Time rules for attendance.
Handles the HH:MM clock format, local "today" and date parsing.
"""
import re
from datetime import date, datetime, timezone
from typing import Optional, Union
import pytz
from ..config import settings


# 24-hour clock, single-digit hour allowed ("9:05"), minutes always two digits
HHMM_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def is_valid_hhmm(value: str) -> bool:
    return bool(HHMM_PATTERN.fullmatch(value or ""))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today_local(timezone_str: Optional[str] = None) -> date:
    """
    Current calendar day in the given timezone.

    Args:
        timezone_str: Timezone string (default from settings)

    Returns:
        Local date
    """
    try:
        tz = pytz.timezone(timezone_str or settings.tz_default)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return datetime.now(tz).date()


def to_local_date(value: Union[date, datetime, str], timezone_str: Optional[str] = None) -> date:
    """
    Reduce a date, datetime or ISO-8601 string to a calendar day.

    Aware datetimes are converted to the local timezone first so that
    "2024-01-10T20:00:00Z" lands on the day the site actually saw.
    """
    if isinstance(value, str):
        raw = value.strip()
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            value = date.fromisoformat(raw)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            tz = pytz.timezone(timezone_str or settings.tz_default)
            value = value.astimezone(tz)
        return value.date()
    return value
