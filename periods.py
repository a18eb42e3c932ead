from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    """Inclusive date range; ``end + date.resolution`` is the exclusive bound."""

    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def month_window(today: date) -> Period:
    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period("monthly", first, next_month - date.resolution)


def year_window(today: date) -> Period:
    return Period("yearly", date(today.year, 1, 1), date(today.year, 12, 31))


def week_window(anchor: date, today: date) -> Period:
    # Buckets count from the budget's own anchor, not from the calendar week.
    # Floor division keeps dates before the anchor in the preceding bucket.
    weeks_complete = (today - anchor).days // 7
    start = anchor + timedelta(days=weeks_complete * 7)
    return Period("weekly", start, start + timedelta(days=6))


def budget_window(
    period: BudgetPeriod,
    start_date: date,
    today: date,
    end_date: Optional[date] = None,
) -> Period:
    if period == BudgetPeriod.monthly:
        return month_window(today)
    if period == BudgetPeriod.yearly:
        return year_window(today)
    if period == BudgetPeriod.weekly:
        return week_window(start_date, today)
    return Period("custom", start_date, end_date or today)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Optional[Period]:
    """Translate list-query parameters into a date range; ``None`` means unbounded."""
    today = today or local_today()
    if not period or period == "all":
        return None
    if period == "this_month":
        return month_window(today)
    if period == "last_month":
        last_month_end = today.replace(day=1) - date.resolution
        return Period("last_month", last_month_end.replace(day=1), last_month_end)
    if period == "this_year":
        return year_window(today)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    raise ValueError(f"Unknown period: {period}")
