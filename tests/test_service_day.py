"""
Unit tests for service day assignment.

Tests cover:
- Local date in the operator timezone
- Optional late-night cutoff
- Naive timestamps treated as UTC
- Cutoff parsing
"""

import sys
from datetime import date, datetime, time, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from service_day import get_service_date, parse_cutoff

NY_TZ = ZoneInfo("America/New_York")


class TestGetServiceDate:
    """Tests for mapping instants onto service dates."""

    def test_local_date_is_used(self):
        """Late evening in New York is the next day in UTC but the same service day."""
        now = datetime(2024, 9, 4, 1, 30, tzinfo=timezone.utc)
        assert get_service_date(now, tz=NY_TZ, cutoff=time(0, 0)) == date(2024, 9, 3)

    def test_naive_timestamp_is_utc(self):
        now = datetime(2024, 9, 4, 1, 30)
        assert get_service_date(now, tz=NY_TZ, cutoff=time(0, 0)) == date(2024, 9, 3)

    def test_before_cutoff_uses_previous_day(self):
        """Before the cutoff, activity belongs to yesterday's service day."""
        now = datetime(2024, 9, 4, 2, 0, tzinfo=NY_TZ)
        assert get_service_date(now, tz=NY_TZ, cutoff=time(2, 30)) == date(2024, 9, 3)

    def test_at_cutoff_uses_current_day(self):
        now = datetime(2024, 9, 4, 2, 30, tzinfo=NY_TZ)
        assert get_service_date(now, tz=NY_TZ, cutoff=time(2, 30)) == date(2024, 9, 4)

    def test_default_is_today(self):
        today = datetime.now(NY_TZ).date()
        assert get_service_date(tz=NY_TZ, cutoff=time(0, 0)) == today


class TestParseCutoff:
    def test_valid(self):
        assert parse_cutoff("02:30") == time(2, 30)
        assert parse_cutoff(" 0:05 ") == time(0, 5)

    @pytest.mark.parametrize("value", ["", "2", "25:00", "ab:cd"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_cutoff(value)
