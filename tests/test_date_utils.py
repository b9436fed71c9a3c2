"""Tests for Clock, FixedClock and date helpers."""

from datetime import datetime

import pytest


class TestClock:

    def test_fixed_clock_localizes_naive_datetime(self):
        from drawcapture.date_utils import FixedClock

        clock = FixedClock(datetime(2025, 12, 29, 11, 30))

        assert clock.now().hour == 11
        assert clock.now().utcoffset().total_seconds() == -3 * 3600
        assert clock.today() == "2025-12-29"
        assert clock.is_override is True

    def test_fixed_clock_accepts_iso_string_and_advances(self):
        from drawcapture.date_utils import FixedClock

        clock = FixedClock("2025-12-29T23:50:00")
        clock.advance(minutes=15)

        assert clock.today() == "2025-12-30"

    def test_system_clock_reports_operating_timezone(self):
        from drawcapture.date_utils import Clock

        clock = Clock("America/Sao_Paulo")

        assert clock.now().tzinfo is not None
        assert clock.timezone.zone == "America/Sao_Paulo"
        assert clock.is_override is False


class TestDateHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("2025-12-29", True),
        ("2025-02-30", False),
        ("2025-1-5", False),
        ("", False),
        (None, False),
    ])
    def test_is_valid_date(self, value, expected):
        from drawcapture.date_utils import is_valid_date
        assert is_valid_date(value) is expected

    def test_to_minutes_and_format(self):
        from drawcapture.date_utils import format_hhmm, to_minutes

        assert to_minutes("11:29") == 689
        assert to_minutes("24:00") is None
        assert to_minutes("11h") is None
        assert format_hhmm(659) == "10:59"
        assert format_hhmm(-1) == "23:59"

    def test_local_datetime_and_minutes_between(self):
        import pytz
        from drawcapture.date_utils import local_datetime, minutes_between

        tz = pytz.timezone("America/Sao_Paulo")
        release = local_datetime("2025-12-29", "11:29", tz)
        later = local_datetime("2025-12-29", "12:30", tz)

        assert release.hour == 11 and release.minute == 29
        assert minutes_between(release, later) == 61
        assert minutes_between(later, release) == -61

    def test_iter_dates_is_inclusive(self):
        from drawcapture.date_utils import iter_dates

        assert list(iter_dates("2025-12-30", "2026-01-01")) == ["2025-12-30", "2025-12-31", "2026-01-01"]
