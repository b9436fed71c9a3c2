"""
Date Utilities
==============

Centralized date handling for the capture pipeline. Every "now" and "today"
used by the scheduler, the importer and the auditor comes from a Clock in
the operating timezone, so window checks and the future-date guard can be
exercised with a fixed time in tests.
"""

import re
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Union

import pytz
from loguru import logger

from drawcapture.errors import ValidationError

DEFAULT_TIMEZONE = 'America/Sao_Paulo'

_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_HHMM_RE = re.compile(r'^(\d{1,2}):(\d{2})$')


class Clock:
    """
    Current time in the operating timezone.

    Attributes:
        timezone: pytz timezone used for every local computation
    """

    def __init__(self, timezone_name: str = DEFAULT_TIMEZONE):
        self.timezone = pytz.timezone(timezone_name)

    @property
    def is_override(self) -> bool:
        return False

    def now(self) -> datetime:
        """Returns the current time, aware, in the operating timezone."""
        return datetime.now(pytz.UTC).astimezone(self.timezone)

    def today(self) -> str:
        """Returns today's date (YYYY-MM-DD) in the operating timezone."""
        return self.now().strftime('%Y-%m-%d')

    def now_iso(self) -> str:
        return self.now().isoformat(timespec='seconds')


class FixedClock(Clock):
    """Clock pinned to one instant. Naive datetimes are read as local time."""

    def __init__(self, at: Union[datetime, str], timezone_name: str = DEFAULT_TIMEZONE):
        super().__init__(timezone_name)
        if isinstance(at, str):
            at = datetime.fromisoformat(at)
        if at.tzinfo is None:
            at = self.timezone.localize(at)
        self._at = at.astimezone(self.timezone)

    @property
    def is_override(self) -> bool:
        return True

    def now(self) -> datetime:
        return self._at

    def advance(self, minutes: int = 0, seconds: int = 0) -> None:
        self._at = self._at + timedelta(minutes=minutes, seconds=seconds)


def clock_at_hhmm(hhmm: str, timezone_name: str = DEFAULT_TIMEZONE) -> FixedClock:
    """
    Builds a FixedClock for today's date at HH:MM in the operating timezone.

    Args:
        hhmm: Time of day, e.g. "11:30"

    Returns:
        FixedClock pinned to today at that time

    Raises:
        ValidationError: hhmm is not a valid HH:MM time
    """
    base = Clock(timezone_name).now()
    minutes = to_minutes(hhmm)
    if minutes is None:
        raise ValidationError(f"Invalid HH:MM override: {hhmm!r}", code="INVALID_HOUR", now_hm=hhmm)
    pinned = base.replace(hour=minutes // 60, minute=minutes % 60, second=0, microsecond=0)
    logger.warning(f"⏰ Clock override active: {pinned.isoformat(timespec='minutes')}")
    return FixedClock(pinned.replace(tzinfo=None), timezone_name)


def is_valid_date(value: str) -> bool:
    """True when value is a real calendar date in YYYY-MM-DD format."""
    if not isinstance(value, str) or not _DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, '%Y-%m-%d')
        return True
    except ValueError:
        return False


def parse_date(value: str) -> date:
    return datetime.strptime(value, '%Y-%m-%d').date()


def to_minutes(hhmm: str) -> Optional[int]:
    """Minutes since midnight for a strict HH:MM string, or None if invalid."""
    match = _HHMM_RE.match(str(hhmm or '').strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def format_hhmm(total_minutes: int) -> str:
    total_minutes = total_minutes % (24 * 60)
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def local_datetime(date_str: str, hhmm: str, tz) -> datetime:
    """
    Combines a YYYY-MM-DD date and an HH:MM time into an aware datetime.

    Args:
        date_str: Calendar date
        hhmm: Time of day
        tz: pytz timezone

    Returns:
        datetime: Localized datetime (DST resolved by pytz)
    """
    minutes = to_minutes(hhmm)
    if minutes is None:
        raise ValueError(f"Invalid HH:MM value: {hhmm!r}")
    naive = datetime.combine(parse_date(date_str), datetime.min.time()) + timedelta(minutes=minutes)
    return tz.localize(naive)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end (negative when end is earlier)."""
    return int((end - start).total_seconds() // 60)


def iter_dates(start: str, end: str) -> Iterator[str]:
    """Yields every date from start to end, inclusive."""
    current = parse_date(start)
    last = parse_date(end)
    while current <= last:
        yield current.strftime('%Y-%m-%d')
        current += timedelta(days=1)
