"""
week_window.py - Monday-Sunday reporting weeks and calendar month windows.
"""

import calendar
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import pytz

from errors import EmptyBatchError, WeekWindowError

logger = logging.getLogger(__name__)

CLINIC_TZ = pytz.timezone(os.environ.get("CLINIC_TIMEZONE", "America/New_York"))

MONDAY = 0
SUNDAY = 6


@dataclass(frozen=True)
class WeekWindow:
    start: date
    end: date

    def __post_init__(self):
        validate_week(self.start, self.end)

    def __contains__(self, day):
        return self.start <= day <= self.end

    @property
    def key(self):
        return self.start.isoformat(), self.end.isoformat()

    def label(self):
        return f"{self.start.strftime('%m/%d')} - {self.end.strftime('%m/%d/%Y')}"


@dataclass(frozen=True)
class MonthWindow:
    start: date
    end: date

    def __contains__(self, day):
        return self.start <= day <= self.end


def validate_week(start, end):
    """Raise WeekWindowError unless start..end is exactly one Monday-Sunday week."""
    span = (end - start).days + 1
    if span != 7:
        raise WeekWindowError(
            f"Week calculation produced {span} days instead of 7: {start} to {end}",
            expectation="week window spans exactly 7 days",
        )
    if start.weekday() != MONDAY or end.weekday() != SUNDAY:
        raise WeekWindowError(
            f"Week {start} to {end} is not Monday-Sunday "
            f"(start weekday {start.weekday()}, end weekday {end.weekday()})",
            expectation="week window starts Monday and ends Sunday",
        )


def get_week_bounds(day=None):
    if day is None:
        day = datetime.now(CLINIC_TZ).date()
    monday = day - timedelta(days=day.weekday())
    sunday = monday + timedelta(days=6)
    return monday, sunday


def sunday_on_or_before(day):
    return day - timedelta(days=(day.weekday() + 1) % 7)


def month_window(day):
    last = calendar.monthrange(day.year, day.month)[1]
    return MonthWindow(date(day.year, day.month, 1), date(day.year, day.month, last))


def previous_week(now=None):
    """The complete week before the one containing ``now`` (clinic local time)."""
    if now is None:
        now = datetime.now(CLINIC_TZ)
    today = now.date() if isinstance(now, datetime) else now
    monday, _ = get_week_bounds(today)
    return WeekWindow(monday - timedelta(days=7), monday - timedelta(days=1))


def week_starting(day):
    """WeekWindow for an explicit Monday; anything else is a caller bug."""
    return WeekWindow(day, day + timedelta(days=6))


def resolve_week_window(dates, path=None):
    """Pick the reporting week for one batch of transaction dates.

    A batch spanning at most 7 days is a single-week upload and snaps to the
    Monday on or before its first date. Longer exports report the most recent
    complete week ending on or before the last date.
    """
    dates = [d for d in dates if d is not None]
    if not dates:
        raise EmptyBatchError(
            "No valid transaction dates found; cannot determine the reporting week",
            path=path,
            expectation="at least one row with a parseable Date / Date Of Payment",
        )
    min_date, max_date = min(dates), max(dates)
    span = (max_date - min_date).days + 1
    logger.info("Date range in data: %s to %s (%d days)", min_date, max_date, span)

    if span <= 7:
        if min_date.weekday() == MONDAY and max_date.weekday() == SUNDAY and span == 7:
            start, end = min_date, max_date
        else:
            start, end = get_week_bounds(min_date)
    else:
        end = sunday_on_or_before(max_date)
        start = end - timedelta(days=6)

    # WeekWindow re-validates; a failure here is arithmetic gone wrong
    try:
        week = WeekWindow(start, end)
    except WeekWindowError as e:
        e.path = str(path) if path else None
        raise
    month = month_window(max_date)
    logger.info("Reporting week %s to %s, month %s to %s",
                week.start, week.end, month.start, month.end)
    return week, month
