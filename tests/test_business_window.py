"""
Unit tests for the business window.

This module tests window membership, next valid instant calculation,
holidays, timezone handling and calendar validation.
"""

import pytest
from datetime import date, datetime, timedelta

import pytz

from followup_engine.exceptions import CalendarConfigError
from followup_engine.services.business_window import (
    BusinessWindow,
    add_days,
    is_ramadan,
    is_within_window,
    next_valid_instant,
    uae_holiday_name,
)
from followup_engine.models import Company


@pytest.fixture
def uae_window():
    """Sunday to Thursday, 08:00-18:00 Dubai time."""
    return BusinessWindow(working_days=[0, 1, 2, 3, 4], start_hour=8, end_hour=18, timezone='Asia/Dubai')


class TestIsWithinWindow:
    """Test window membership."""

    def test_inside_hours_on_working_day(self, uae_window):
        """Sunday 10:00 Dubai is inside the window."""
        assert is_within_window(datetime(2024, 3, 17, 6, 0), uae_window) is True

    def test_weekend_is_outside(self, uae_window):
        """Friday and Saturday are not working days."""
        assert is_within_window(datetime(2024, 3, 15, 6, 0), uae_window) is False
        assert is_within_window(datetime(2024, 3, 16, 6, 0), uae_window) is False

    def test_end_hour_is_exclusive(self, uae_window):
        """18:00 Dubai is already outside the window, 17:59 is inside."""
        assert is_within_window(datetime(2024, 3, 18, 14, 0), uae_window) is False
        assert is_within_window(datetime(2024, 3, 18, 13, 59), uae_window) is True

    def test_start_hour_is_inclusive(self, uae_window):
        """08:00 Dubai is inside the window."""
        assert is_within_window(datetime(2024, 3, 18, 4, 0), uae_window) is True

    def test_holiday_is_outside(self):
        """A holiday on a working day is outside the window."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', holidays=['2024-03-18'])
        assert window.is_within_window(datetime(2024, 3, 18, 6, 0)) is False


class TestNextValidInstant:
    """Test advancing candidates to the next permitted send time."""

    def test_friday_afternoon_moves_to_sunday_opening(self, uae_window):
        """Friday 15:00 Dubai moves to Sunday 08:00 Dubai (04:00 UTC)."""
        friday_15_dubai = datetime(2024, 3, 15, 11, 0)
        result = next_valid_instant(friday_15_dubai, uae_window)
        assert result == datetime(2024, 3, 17, 4, 0)

    def test_candidate_inside_window_is_unchanged(self, uae_window):
        """Candidates already inside the window are returned as-is."""
        candidate = datetime(2024, 3, 17, 6, 30, 15)
        assert next_valid_instant(candidate, uae_window) == candidate

    def test_before_opening_moves_to_same_day_opening(self, uae_window):
        """Monday 06:00 Dubai moves to Monday 08:00 Dubai."""
        result = next_valid_instant(datetime(2024, 3, 18, 2, 0), uae_window)
        assert result == datetime(2024, 3, 18, 4, 0)

    def test_after_closing_moves_to_next_day_opening(self, uae_window):
        """Monday 19:00 Dubai moves to Tuesday 08:00 Dubai."""
        result = next_valid_instant(datetime(2024, 3, 18, 15, 0), uae_window)
        assert result == datetime(2024, 3, 19, 4, 0)

    def test_thursday_evening_moves_to_sunday(self, uae_window):
        """Thursday 20:00 Dubai skips the weekend."""
        result = next_valid_instant(datetime(2024, 3, 21, 16, 0), uae_window)
        assert result == datetime(2024, 3, 24, 4, 0)

    def test_local_date_differs_from_utc_date(self, uae_window):
        """Saturday 21:00 UTC is already Sunday 01:00 in Dubai."""
        result = next_valid_instant(datetime(2024, 3, 16, 21, 0), uae_window)
        assert result == datetime(2024, 3, 17, 4, 0)

    def test_holidays_are_skipped(self):
        """A holiday Sunday pushes the Friday candidate to Monday."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', holidays=[date(2024, 3, 17)])
        result = next_valid_instant(datetime(2024, 3, 15, 11, 0), window)
        assert result == datetime(2024, 3, 18, 4, 0)

    def test_timezone_aware_candidate_returns_naive_utc(self, uae_window):
        """Aware datetimes are converted and the result is naive UTC."""
        dubai = pytz.timezone('Asia/Dubai')
        candidate = dubai.localize(datetime(2024, 3, 15, 15, 0))
        result = next_valid_instant(candidate, uae_window)
        assert result.tzinfo is None
        assert result == datetime(2024, 3, 17, 4, 0)

    def test_western_week_in_utc(self):
        """Monday to Friday in UTC moves a Saturday candidate to Monday 09:00."""
        window = BusinessWindow([1, 2, 3, 4, 5], 9, 17, 'UTC')
        result = window.next_valid_instant(datetime(2024, 3, 16, 12, 0))
        assert result == datetime(2024, 3, 18, 9, 0)

    def test_result_is_always_inside_window(self, uae_window):
        """Every hourly candidate over a week lands inside the window, never earlier than itself."""
        start = datetime(2024, 3, 14, 0, 0)
        for hour in range(24 * 7):
            candidate = start + timedelta(hours=hour, minutes=17)
            result = next_valid_instant(candidate, uae_window)
            assert result >= candidate
            assert is_within_window(result, uae_window)

    def test_no_permitted_day_within_horizon_raises(self):
        """A calendar whose only working day is always a holiday cannot produce an instant."""
        first_friday = date(2024, 3, 15)
        holidays = [first_friday + timedelta(weeks=week) for week in range(60)]
        window = BusinessWindow([5], 8, 18, 'Asia/Dubai', holidays=holidays)
        with pytest.raises(CalendarConfigError):
            next_valid_instant(datetime(2024, 3, 15, 11, 0), window)


class TestCalendarValidation:
    """Test business window configuration errors."""

    def test_empty_working_days(self):
        with pytest.raises(CalendarConfigError):
            BusinessWindow([], 8, 18, 'Asia/Dubai')

    def test_invalid_weekday_index(self):
        with pytest.raises(CalendarConfigError):
            BusinessWindow([0, 7], 8, 18, 'Asia/Dubai')

    def test_start_not_before_end(self):
        with pytest.raises(CalendarConfigError):
            BusinessWindow([0, 1], 18, 18, 'Asia/Dubai')

    def test_unknown_timezone(self):
        with pytest.raises(CalendarConfigError):
            BusinessWindow([0, 1], 8, 18, 'Mars/Olympus_Mons')

    def test_invalid_holiday(self):
        with pytest.raises(CalendarConfigError):
            BusinessWindow([0, 1], 8, 18, 'Asia/Dubai', holidays=['not-a-date'])

    def test_describe(self, uae_window):
        description = uae_window.describe()
        assert description['working_day_names'] == ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday']
        assert description['start_hour'] == 8
        assert description['end_hour'] == 18
        assert description['timezone'] == 'Asia/Dubai'



class TestUaeRules:
    """Test the optional holiday calendar, prayer time and Ramadan rules."""

    def test_rules_are_off_by_default(self, uae_window):
        """Dhuhr on a Ramadan Monday is an ordinary send time without the rules."""
        assert uae_window.is_within_window(datetime(2024, 3, 18, 8, 20)) is True
        assert uae_window.is_within_window(datetime(2024, 4, 10, 6, 0)) is True

        calendar = Company(name='Defaults', working_days=[0, 1, 2, 3, 4], start_hour=8, end_hour=18).calendar_config()
        assert calendar.avoid_prayer_times is False
        assert calendar.respect_ramadan is False
        assert calendar.observe_uae_holidays is False

    def test_prayer_blackout_is_outside(self):
        """Dhuhr at 12:15 Dubai blocks 12:00 to 12:30."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', avoid_prayer_times=True)
        assert window.is_within_window(datetime(2024, 3, 18, 7, 59)) is True
        assert window.is_within_window(datetime(2024, 3, 18, 8, 0)) is False
        assert window.is_within_window(datetime(2024, 3, 18, 8, 20)) is False
        assert window.is_within_window(datetime(2024, 3, 18, 8, 30)) is True

    def test_prayer_blackout_moves_to_its_end(self):
        """Monday 15:15 Dubai (Asr) moves to 15:45 Dubai the same day."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', avoid_prayer_times=True)
        assert window.next_valid_instant(datetime(2024, 3, 18, 11, 15)) == datetime(2024, 3, 18, 11, 45)
        assert window.next_valid_instant(datetime(2024, 3, 18, 8, 5, 30)) == datetime(2024, 3, 18, 8, 30)

    def test_ramadan_shortens_hours(self):
        """During Ramadan sends move into 09:00-15:00 Dubai."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', respect_ramadan=True)
        assert is_ramadan(date(2024, 3, 18)) is True
        assert window.is_within_window(datetime(2024, 3, 18, 4, 30)) is False
        assert window.next_valid_instant(datetime(2024, 3, 18, 4, 30)) == datetime(2024, 3, 18, 5, 0)
        # 15:30 Dubai is past the Ramadan closing time
        assert window.next_valid_instant(datetime(2024, 3, 18, 11, 30)) == datetime(2024, 3, 19, 5, 0)

    def test_normal_hours_after_ramadan(self):
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', respect_ramadan=True)
        assert is_ramadan(date(2024, 4, 15)) is False
        assert window.is_within_window(datetime(2024, 4, 15, 4, 30)) is True

    def test_uae_holidays_are_skipped(self):
        """Eid Al Fitr (9-11 April 2024) pushes a Tuesday candidate past the weekend to Sunday."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', observe_uae_holidays=True)
        assert window.is_within_window(datetime(2024, 4, 9, 6, 0)) is False
        assert window.next_valid_instant(datetime(2024, 4, 9, 6, 0)) == datetime(2024, 4, 14, 4, 0)

    def test_recurring_holidays_apply_every_year(self):
        assert uae_holiday_name(date(2031, 12, 2)) == 'UAE National Day'
        assert uae_holiday_name(date(2031, 1, 1)) == 'New Year Day'
        assert uae_holiday_name(date(2031, 3, 18)) is None

    def test_all_rules_keep_results_inside_window(self):
        """Hourly candidates across a Ramadan week land inside the window, never earlier than themselves."""
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', observe_uae_holidays=True,
                                avoid_prayer_times=True, respect_ramadan=True)
        start = datetime(2024, 3, 14, 0, 0)
        for hour in range(24 * 7):
            candidate = start + timedelta(hours=hour, minutes=17)
            result = next_valid_instant(candidate, window)
            assert result >= candidate
            assert is_within_window(result, window)

    def test_describe_lists_rules(self):
        window = BusinessWindow([0, 1, 2, 3, 4], 8, 18, 'Asia/Dubai', avoid_prayer_times=True)
        description = window.describe()
        assert description['avoid_prayer_times'] is True
        assert description['respect_ramadan'] is False

def test_add_days():
    assert add_days(datetime(2024, 3, 17, 6, 0), 3) == datetime(2024, 3, 20, 6, 0)
