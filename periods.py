from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, d: date) -> bool:
        return self.start <= d <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamp_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def month_index(d: date) -> int:
    return d.year * 12 + (d.month - 1)


def add_months(base: date, months: int, *, anchor_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return clamp_day(year, month, anchor_day or base.day)


def add_interval(
    base: date, frequency: Frequency, *, anchor_day: Optional[int] = None
) -> date:
    """Advance ``base`` by one period of ``frequency``.

    Monthly and yearly steps aim for ``anchor_day`` (default: ``base.day``)
    and clamp to the last day of the target month, so a series anchored on
    the 31st goes Jan 31, Feb 29, Mar 31 rather than drifting to the 29th.
    """
    if frequency == Frequency.daily:
        return base + timedelta(days=1)
    if frequency == Frequency.weekly:
        return base + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return add_months(base, 1, anchor_day=anchor_day)
    if frequency == Frequency.yearly:
        return add_months(base, 12, anchor_day=anchor_day)
    raise ValueError(f"Unsupported frequency: {frequency}")


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    if not period or period == "all":
        return Period("all", date(1970, 1, 1), date.max)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    # this month
    first = today.replace(day=1)
    end_this = date(first.year, first.month, days_in_month(first.year, first.month))
    return Period("this_month", first, end_this)
