"""Billing-period date arithmetic (UTC)."""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the store."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_years(value: datetime, years: int) -> datetime:
    return add_months(value, 12 * years)


def start_of_next_month(now: datetime) -> datetime:
    first_this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return add_months(first_this_month, 1)


def start_of_next_hour(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def on_anchor_day(value: datetime, anchor_day: int) -> datetime:
    """Move to ``anchor_day`` of the same month, clamped to the month's length."""
    day = min(anchor_day, calendar.monthrange(value.year, value.month)[1])
    return value.replace(day=day)


def next_period_window(
    period_end: datetime, now: datetime, anchor_day: Optional[int] = None
) -> Tuple[datetime, datetime]:
    """Monthly window following ``period_end`` that contains ``now``.

    Boundaries land on ``anchor_day`` (default: period_end's day) so a
    period anchored on the 31st comes back to the 31st after a short month.
    Skips whole months if the account was idle across several periods.
    """
    start = as_utc(period_end)
    day = anchor_day or start.day
    end = on_anchor_day(add_months(start, 1), day)
    while now > end:
        start = end
        end = on_anchor_day(add_months(start, 1), day)
    return start, end
