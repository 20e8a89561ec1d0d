"""
Date and Time utilities

This module handles XMLTV timestamp parsing, epoch conversion and the clock
used by the stores. Centralizes all date parsing logic to maintain consistency
across the application.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Callable


Clock = Callable[[], datetime]

_XMLTV_TIME_RE = re.compile(r"^(\d{14})\s*([+-])(\d{2})(\d{2})$")


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def utc_now() -> datetime:
    """Current instant as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_xmltv_time(time_str: str | None) -> datetime:
    """
    Convert XMLTV time format to a UTC datetime

    The offset field is mandatory: '20080715003000 -0600' is accepted,
    '20080715003000' is not.

    Args:
        time_str: XMLTV time like '20080715003000 -0600'

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        DateFormatError: If the time string format is invalid
    """
    match = _XMLTV_TIME_RE.match((time_str or "").strip())
    if not match:
        raise DateFormatError(f"Invalid XMLTV time: '{time_str}'")

    time_part, sign, tz_hours, tz_mins = match.groups()
    try:
        dt = datetime.strptime(time_part, "%Y%m%d%H%M%S")
    except ValueError as e:
        raise DateFormatError(f"Invalid XMLTV time: '{time_str}'") from e

    offset_minutes = int(tz_hours) * 60 + int(tz_mins)
    if sign == "-":
        offset_minutes = -offset_minutes

    # Convert to UTC
    try:
        return (dt - timedelta(minutes=offset_minutes)).replace(tzinfo=timezone.utc)
    except OverflowError as e:
        raise DateFormatError(f"XMLTV time out of range: '{time_str}'") from e


def to_epoch_ms(dt: datetime) -> int:
    """Datetime to integer milliseconds since the epoch (storage format)"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    """Integer milliseconds since the epoch to a UTC datetime"""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
