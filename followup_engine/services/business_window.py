"""
Business window calculations.

This module contains functionality for:
- Calendar configuration (working days, hours, holidays, timezone)
- Optional UAE rules: the public holiday calendar, prayer time blackouts
  and shortened Ramadan hours
- Checking whether an instant falls inside the business window
- Advancing a candidate instant to the next permitted send time

Weekday indices follow the 0=Sunday ... 6=Saturday convention so that a UAE
working week reads as [0, 1, 2, 3, 4]. Naive datetimes are treated as UTC and
results are returned as naive UTC, matching how timestamps are stored.

The UAE rules are off unless a calendar enables them. Prayer times and
Ramadan dates are fixed approximations in the calendar's local time, not an
astronomical calculation.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Tuple

import pytz

from followup_engine.exceptions import CalendarConfigError

logger = logging.getLogger(__name__)

# Upper bound on how far ahead next_valid_instant searches before giving up
MAX_SEARCH_DAYS = 400

WEEKDAY_NAMES = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']

# Local prayer times (HH:MM) blocked out when avoid_prayer_times is set
PRAYER_TIMES = {
    'fajr': '05:30',
    'dhuhr': '12:15',
    'asr': '15:30',
    'maghrib': '18:30',
    'isha': '20:00',
}
PRAYER_BUFFER_MINUTES = 15

# (first day, last day) of Ramadan, both inclusive
RAMADAN_PERIODS = [
    (date(2024, 3, 10), date(2024, 4, 9)),
    (date(2025, 2, 28), date(2025, 3, 30)),
]
RAMADAN_START_HOUR = 9
RAMADAN_END_HOUR = 15

# Holidays observed every year on the same date: (month, day) -> name
UAE_RECURRING_HOLIDAYS = {
    (1, 1): 'New Year Day',
    (12, 1): 'Commemoration Day',
    (12, 2): 'UAE National Day',
    (12, 3): 'UAE National Day Holiday',
}

# Islamic holidays follow the lunar calendar and are listed per year
UAE_DATED_HOLIDAYS = {
    date(2024, 4, 9): 'Eid Al Fitr',
    date(2024, 4, 10): 'Eid Al Fitr Holiday',
    date(2024, 4, 11): 'Eid Al Fitr Holiday',
    date(2024, 6, 15): 'Arafat Day',
    date(2024, 6, 16): 'Eid Al Adha',
    date(2024, 6, 17): 'Eid Al Adha Holiday',
    date(2024, 6, 18): 'Eid Al Adha Holiday',
    date(2024, 7, 7): 'Islamic New Year',
    date(2024, 9, 15): 'Prophet Muhammad Birthday',
}


def uae_holiday_name(local_date: date) -> Optional[str]:
    """Name of the UAE public holiday falling on ``local_date``, if any."""
    return UAE_DATED_HOLIDAYS.get(local_date) or UAE_RECURRING_HOLIDAYS.get((local_date.month, local_date.day))


def is_ramadan(local_date: date) -> bool:
    return any(first <= local_date <= last for first, last in RAMADAN_PERIODS)


class BusinessWindow:
    """Calendar configuration for one tenant."""

    def __init__(self, working_days: Iterable[int], start_hour: int, end_hour: int,
                 timezone: str = 'Asia/Dubai', holidays: Optional[Iterable] = None,
                 observe_uae_holidays: bool = False, avoid_prayer_times: bool = False,
                 respect_ramadan: bool = False, prayer_buffer_minutes: int = PRAYER_BUFFER_MINUTES):
        self.working_days = frozenset(int(day) for day in (working_days or []))
        self.start_hour = int(start_hour)
        self.end_hour = int(end_hour)
        self.timezone = timezone
        self.holidays = frozenset(_parse_holiday(h) for h in (holidays or []))
        self.observe_uae_holidays = bool(observe_uae_holidays)
        self.avoid_prayer_times = bool(avoid_prayer_times)
        self.respect_ramadan = bool(respect_ramadan)
        self.prayer_buffer_minutes = int(prayer_buffer_minutes)

        if not self.working_days:
            raise CalendarConfigError("Business window must have at least one working day")
        invalid_days = [day for day in self.working_days if day < 0 or day > 6]
        if invalid_days:
            raise CalendarConfigError(f"Invalid working days {sorted(invalid_days)}; expected 0 (Sunday) to 6 (Saturday)")
        if not (0 <= self.start_hour < self.end_hour <= 24):
            raise CalendarConfigError(f"Invalid business hours {self.start_hour}-{self.end_hour}")
        if self.prayer_buffer_minutes < 0:
            raise CalendarConfigError("Prayer buffer cannot be negative")
        try:
            self.tz = pytz.timezone(timezone)
        except pytz.exceptions.UnknownTimeZoneError:
            raise CalendarConfigError(f"Unknown timezone '{timezone}'")

    def is_within_window(self, instant: datetime) -> bool:
        return is_within_window(instant, self)

    def next_valid_instant(self, candidate: datetime) -> datetime:
        return next_valid_instant(candidate, self)

    def is_permitted_day(self, local_date: date) -> bool:
        """Check whether a local calendar date is a working, non-holiday day."""
        if _weekday_index(local_date) not in self.working_days or local_date in self.holidays:
            return False
        return not (self.observe_uae_holidays and uae_holiday_name(local_date))

    def hours_for(self, local_date: date) -> Optional[Tuple[int, int]]:
        """Send hours (start inclusive, end exclusive) for a local date, or None when none remain."""
        start, end = self.start_hour, self.end_hour
        if self.respect_ramadan and is_ramadan(local_date):
            start, end = max(start, RAMADAN_START_HOUR), min(end, RAMADAN_END_HOUR)
        if start >= end:
            return None
        return start, end

    def prayer_blackout_end(self, local: datetime) -> Optional[datetime]:
        """End of the prayer blackout containing the naive local time ``local``, if it is in one."""
        if not self.avoid_prayer_times:
            return None
        buffer = timedelta(minutes=self.prayer_buffer_minutes)
        for prayer_time in sorted(PRAYER_TIMES.values()):
            hour, minute = (int(part) for part in prayer_time.split(':'))
            prayer = datetime.combine(local.date(), time(hour=hour, minute=minute))
            if prayer - buffer <= local < prayer + buffer:
                return prayer + buffer
        return None

    def describe(self) -> dict:
        return {
            'timezone': self.timezone,
            'working_days': sorted(self.working_days),
            'working_day_names': [WEEKDAY_NAMES[day] for day in sorted(self.working_days)],
            'start_hour': self.start_hour,
            'end_hour': self.end_hour,
            'holidays': sorted(h.isoformat() for h in self.holidays),
            'observe_uae_holidays': self.observe_uae_holidays,
            'avoid_prayer_times': self.avoid_prayer_times,
            'respect_ramadan': self.respect_ramadan,
        }

    def __repr__(self):
        return f'<BusinessWindow {self.timezone} days={sorted(self.working_days)} {self.start_hour}-{self.end_hour}>'


def _parse_holiday(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise CalendarConfigError(f"Invalid holiday date '{value}'")


def _weekday_index(local_date: date) -> int:
    """Python's Monday=0 weekday mapped onto Sunday=0."""
    return (local_date.weekday() + 1) % 7


def _to_local(instant: datetime, tz) -> datetime:
    if instant.tzinfo is None:
        instant = pytz.UTC.localize(instant)
    return instant.astimezone(tz)


def _to_naive_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(pytz.UTC).replace(tzinfo=None)


def is_within_window(instant: datetime, config: BusinessWindow) -> bool:
    """Check whether an instant falls on a permitted day, within that day's hours and outside prayer times."""
    local = _to_local(instant, config.tz)
    if not config.is_permitted_day(local.date()):
        return False
    hours = config.hours_for(local.date())
    if hours is None or not (hours[0] <= local.hour < hours[1]):
        return False
    return config.prayer_blackout_end(local.replace(tzinfo=None)) is None


def next_valid_instant(candidate: datetime, config: BusinessWindow) -> datetime:
    """
    Return the earliest instant at or after ``candidate`` inside the window.

    A candidate already inside the window is returned unchanged. Otherwise the
    result is the first open moment of the candidate's own local day that is
    not earlier than the candidate (the opening, or the end of a prayer
    blackout), or the opening of the first later permitted day.
    """
    if is_within_window(candidate, config):
        return _to_naive_utc(candidate)

    local = _to_local(candidate, config.tz)
    day = local.date()
    not_before = local.replace(tzinfo=None)

    for offset in range(MAX_SEARCH_DAYS + 1):
        next_day = day + timedelta(days=offset)
        if not config.is_permitted_day(next_day):
            continue
        opening = _first_open_moment(next_day, not_before if offset == 0 else None, config)
        if opening is not None:
            return _from_local(opening, config)

    logger.error(f"No permitted business day within {MAX_SEARCH_DAYS} days of {candidate} for {config!r}")
    raise CalendarConfigError(f"No permitted business day within {MAX_SEARCH_DAYS} days")


def _first_open_moment(local_date: date, not_before: Optional[datetime], config: BusinessWindow) -> Optional[datetime]:
    """Earliest naive local time on ``local_date`` that is open, or None when the day has no such time left."""
    hours = config.hours_for(local_date)
    if hours is None:
        return None
    midnight = datetime.combine(local_date, time())
    moment = midnight + timedelta(hours=hours[0])
    if not_before is not None and not_before > moment:
        moment = not_before

    blackout_end = config.prayer_blackout_end(moment)
    while blackout_end is not None:
        moment = blackout_end
        blackout_end = config.prayer_blackout_end(moment)

    if moment >= midnight + timedelta(hours=hours[1]):
        return None
    return moment


def _from_local(local: datetime, config: BusinessWindow) -> datetime:
    return _to_naive_utc(config.tz.normalize(config.tz.localize(local)))


def add_days(instant: datetime, days: int) -> datetime:
    """Offset an instant by whole calendar days."""
    return instant + timedelta(days=days)
