from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta

from pennywise.schemas import RecurringInterval


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def shift_month_keep_day(value: datetime, months: int) -> datetime:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return value.replace(year=year, month=month, day=day)


def month_range(value: date) -> tuple[datetime, datetime]:
    """Return the half-open [start, end) datetime range of value's calendar month."""
    start = datetime(value.year, value.month, 1)
    following = shift_month(value, 1)
    return start, datetime(following.year, following.month, 1)


def advance(value: datetime, interval: str | None) -> datetime:
    if interval == RecurringInterval.DAILY:
        return value + timedelta(days=1)
    if interval == RecurringInterval.WEEKLY:
        return value + timedelta(days=7)
    if interval == RecurringInterval.MONTHLY:
        return shift_month_keep_day(value, 1)
    if interval == RecurringInterval.YEARLY:
        return shift_month_keep_day(value, 12)
    return value
