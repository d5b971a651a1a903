from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import InvalidDateRange
from models import BudgetPeriod


@dataclass(frozen=True)
class Window:
    start: date
    end: date

    def overlaps(self, other: "Window") -> bool:
        # Windows that only share an edge day do not overlap.
        return self.start < other.end and other.start < self.end


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def resolve_window(
    period: Union[BudgetPeriod, str], start: date, end: Optional[date] = None
) -> Window:
    """Return the budget window for ``period`` starting on ``start``.

    An explicit ``end`` always wins. Without one, weekly, monthly and yearly
    budgets cover one full period ending the day before the next one would
    start; custom budgets must name their end date.
    """
    if end is not None:
        return Window(start, end)
    period = BudgetPeriod(period)
    if period == BudgetPeriod.weekly:
        return Window(start, start + timedelta(days=6))
    if period == BudgetPeriod.monthly:
        return Window(start, add_months(start, 1) - date.resolution)
    if period == BudgetPeriod.yearly:
        return Window(start, add_months(start, 12) - date.resolution)
    raise InvalidDateRange("Custom budgets require an end date")


def local_now() -> datetime:
    settings = get_settings()
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()
