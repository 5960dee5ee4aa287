# -*- coding: utf-8 -*-
"""
Tests for calendar period arithmetic
"""

import pytest
from datetime import datetime, timedelta

from meterflow.billing.periods import (
    AggregationPeriod,
    add_months,
    days_between,
    period_bounds,
    previous_period_start,
    shift_periods,
)


TS = datetime(2024, 5, 15, 14, 37, 12, 500)  # Wednesday


class TestPeriodBounds:
    @pytest.mark.parametrize("period,expected_start,expected_next", [
        (AggregationPeriod.HOURLY, datetime(2024, 5, 15, 14), datetime(2024, 5, 15, 15)),
        (AggregationPeriod.DAILY, datetime(2024, 5, 15), datetime(2024, 5, 16)),
        (AggregationPeriod.WEEKLY, datetime(2024, 5, 13), datetime(2024, 5, 20)),
        (AggregationPeriod.MONTHLY, datetime(2024, 5, 1), datetime(2024, 6, 1)),
        (AggregationPeriod.QUARTERLY, datetime(2024, 4, 1), datetime(2024, 7, 1)),
        (AggregationPeriod.YEARLY, datetime(2024, 1, 1), datetime(2025, 1, 1)),
    ])
    def test_calendar_rules(self, period, expected_start, expected_next):
        start, end = period_bounds(period, TS)
        assert start == expected_start
        assert end == expected_next - timedelta(microseconds=1)

    def test_bounds_are_idempotent(self):
        for period in AggregationPeriod:
            first = period_bounds(period, TS)
            again = period_bounds(period, first[0])
            assert first == again
            assert period_bounds(period, first[1]) == first

    def test_week_starts_on_monday_even_on_sunday(self):
        start, _ = period_bounds(AggregationPeriod.WEEKLY, datetime(2024, 6, 16, 23, 59))
        assert start == datetime(2024, 6, 10)
        assert start.weekday() == 0

    def test_quarter_from_last_day_of_month(self):
        start, end = period_bounds(AggregationPeriod.QUARTERLY, datetime(2024, 5, 31, 12))
        assert start == datetime(2024, 4, 1)
        assert end.date() == datetime(2024, 6, 30).date()

    def test_december_rolls_into_next_year(self):
        _, end = period_bounds(AggregationPeriod.MONTHLY, datetime(2024, 12, 10))
        assert end == datetime(2025, 1, 1) - timedelta(microseconds=1)

    def test_accepts_string_period(self):
        assert period_bounds("daily", TS) == period_bounds(AggregationPeriod.DAILY, TS)


class TestShifting:
    def test_add_months_clamps_day(self):
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)

    def test_shift_backwards_across_year(self):
        assert shift_periods(datetime(2024, 2, 1), AggregationPeriod.QUARTERLY, -1) == datetime(2023, 11, 1)

    def test_previous_period_start(self):
        assert previous_period_start(AggregationPeriod.MONTHLY, TS) == datetime(2024, 4, 1)
        assert previous_period_start(AggregationPeriod.WEEKLY, TS) == datetime(2024, 5, 6)
        assert previous_period_start(AggregationPeriod.YEARLY, TS) == datetime(2023, 1, 1)
        assert previous_period_start(AggregationPeriod.HOURLY, TS) == datetime(2024, 5, 15, 13)


class TestDaysBetween:
    def test_month_window(self):
        assert days_between(datetime(2024, 6, 1), datetime(2024, 6, 30)) == 29

    def test_partial_window(self):
        assert days_between(datetime(2024, 6, 20), datetime(2024, 6, 30)) == 10

    def test_partial_day_rounds_up(self):
        assert days_between(datetime(2024, 6, 1), datetime(2024, 6, 1, 1)) == 1

    def test_inverted_window_is_zero(self):
        assert days_between(datetime(2024, 6, 30), datetime(2024, 6, 1)) == 0
