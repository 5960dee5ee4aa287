# -*- coding: utf-8 -*-
"""
Calendar Period Arithmetic
==========================

Bucket bounds shared by metering resets, aggregation buckets and billing
windows. All datetimes are naive local time.

Rules:
- hourly: top of the hour
- daily: local midnight
- weekly: Monday 00:00
- monthly: 1st of the month
- quarterly: 1st of Jan/Apr/Jul/Oct
- yearly: Jan 1st

A period's end is the last microsecond before the next period's start, so
bounds computed twice for the same instant are identical.
"""

import calendar
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Tuple


class AggregationPeriod(str, Enum):
    """Periodos de agregacao"""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


_ONE_MICROSECOND = timedelta(microseconds=1)
_MONTH_STEPS = {
    AggregationPeriod.MONTHLY: 1,
    AggregationPeriod.QUARTERLY: 3,
    AggregationPeriod.YEARLY: 12,
}


def add_months(ts: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = ts.month - 1 + months
    year = ts.year + month_index // 12
    month = month_index % 12 + 1
    day = min(ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


def period_start(period: AggregationPeriod, ts: datetime) -> datetime:
    period = AggregationPeriod(period)
    hour_start = ts.replace(minute=0, second=0, microsecond=0)

    if period == AggregationPeriod.HOURLY:
        return hour_start

    day_start = hour_start.replace(hour=0)
    if period == AggregationPeriod.DAILY:
        return day_start
    if period == AggregationPeriod.WEEKLY:
        return day_start - timedelta(days=day_start.weekday())
    if period == AggregationPeriod.MONTHLY:
        return day_start.replace(day=1)
    if period == AggregationPeriod.QUARTERLY:
        quarter_month = ((ts.month - 1) // 3) * 3 + 1
        return day_start.replace(month=quarter_month, day=1)
    return day_start.replace(month=1, day=1)


def shift_periods(ts: datetime, period: AggregationPeriod, count: int) -> datetime:
    """Move ``ts`` by ``count`` periods (negative goes back)."""
    period = AggregationPeriod(period)
    if period == AggregationPeriod.HOURLY:
        return ts + timedelta(hours=count)
    if period == AggregationPeriod.DAILY:
        return ts + timedelta(days=count)
    if period == AggregationPeriod.WEEKLY:
        return ts + timedelta(weeks=count)
    return add_months(ts, _MONTH_STEPS[period] * count)


def period_bounds(period: AggregationPeriod, ts: datetime) -> Tuple[datetime, datetime]:
    """Return (start, end) of the period containing ``ts``; end is inclusive."""
    start = period_start(period, ts)
    end = shift_periods(start, period, 1) - _ONE_MICROSECOND
    return start, end


def period_end(period: AggregationPeriod, ts: datetime) -> datetime:
    return period_bounds(period, ts)[1]


def previous_period_start(period: AggregationPeriod, ts: datetime) -> datetime:
    return shift_periods(period_start(period, ts), period, -1)


def days_between(start: datetime, end: datetime) -> int:
    """
    Day count used for proration: elapsed time rounded up to whole days.

    2024-06-01 -> 2024-06-30 is 29 days, 2024-06-20 -> 2024-06-30 is 10.
    A window shorter than a day still counts as one day; an inverted
    window counts as zero.
    """
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)
