"""Tests for thakirni.core.recurrence — pure occurrence arithmetic."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from thakirni.core.recurrence import (
    next_occurrence,
    occurrence,
    reminder_type_for,
    within_end,
)

RIYADH = ZoneInfo("Asia/Riyadh")
T = datetime(2026, 1, 31, 6, 0, tzinfo=timezone.utc)  # 09:00 in Riyadh


class TestReminderTypeFor:
    @pytest.mark.parametrize("kind", ["daily", "weekly", "monthly", "yearly"])
    def test_recurring(self, kind):
        assert reminder_type_for(kind) == kind

    @pytest.mark.parametrize("value", [None, "none", "hourly"])
    def test_everything_else_is_one_time(self, value):
        assert reminder_type_for(value) == "one_time"


class TestOccurrence:
    def test_monthly_clamps_to_month_end(self):
        assert occurrence(T, "monthly", 1).day == 28
        assert occurrence(T, "monthly", 2).day == 31
        assert occurrence(T, "monthly", 3).day == 30

    def test_yearly_leap_day(self):
        anchor = datetime(2028, 2, 29, 8, 0, tzinfo=timezone.utc)
        assert occurrence(anchor, "yearly", 1) == datetime(2029, 2, 28, 8, 0, tzinfo=timezone.utc)
        assert occurrence(anchor, "yearly", 4) == anchor.replace(year=2032)

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            occurrence(T, "one_time", 1)

    def test_daily_keeps_local_wall_time(self):
        value = occurrence(T, "daily", 10, RIYADH)
        assert value.astimezone(RIYADH).hour == 9


class TestNextOccurrence:
    def test_first_step_after_anchor(self):
        assert next_occurrence(T, "weekly", T) == T + timedelta(days=7)

    def test_strictly_after(self):
        after = T + timedelta(days=7)
        assert next_occurrence(T, "weekly", after) == T + timedelta(days=14)

    def test_skips_missed_occurrences(self):
        after = T + timedelta(days=30, hours=1)
        assert next_occurrence(T, "daily", after) == T + timedelta(days=31)

    def test_monthly_stays_anchored(self):
        after = datetime(2026, 2, 28, 7, 0, tzinfo=timezone.utc)
        assert next_occurrence(T, "monthly", after) == datetime(2026, 3, 31, 6, 0, tzinfo=timezone.utc)

    def test_one_time_returns_none(self):
        assert next_occurrence(T, "one_time", T) is None


class TestWithinEnd:
    def test_no_end(self):
        assert within_end(T, None) is True

    def test_boundary_is_inclusive(self):
        assert within_end(T, T) is True
        assert within_end(T + timedelta(seconds=1), T) is False
