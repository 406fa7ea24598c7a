from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    @property
    def is_empty(self) -> bool:
        return self.start > self.end


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _day_bounds(first: date, last: date) -> tuple[datetime, datetime]:
    return datetime.combine(first, time.min), datetime.combine(last, time.max)


def normalize_period(period: Union[BudgetPeriod, str, None]) -> BudgetPeriod:
    if isinstance(period, BudgetPeriod):
        return period
    try:
        return BudgetPeriod(period)
    except ValueError:
        return BudgetPeriod.monthly


def compute_range(
    period: Union[BudgetPeriod, str, None], reference: DateLike
) -> Period:
    slug = normalize_period(period)
    day = _as_date(reference)
    if slug == BudgetPeriod.daily:
        first, last = day, day
    elif slug == BudgetPeriod.weekly:
        # weekday() is 0 for Monday, so Sunday steps back six days
        first = day - timedelta(days=day.weekday())
        last = first + timedelta(days=6)
    elif slug == BudgetPeriod.yearly:
        first, last = date(day.year, 1, 1), date(day.year, 12, 31)
    else:
        first = day.replace(day=1)
        if first.month == 12:
            next_month = first.replace(year=first.year + 1, month=1)
        else:
            next_month = first.replace(month=first.month + 1)
        last = next_month - date.resolution
    start, end = _day_bounds(first, last)
    return Period(slug.value, start, end)


def clamp_to_start(window: Period, budget_start: DateLike) -> Period:
    start = max(window.start, _as_datetime(budget_start))
    return Period(window.slug, start, window.end)


def next_window(window: Period) -> Period:
    return compute_range(window.slug, window.end + timedelta(microseconds=1))


def budget_window(
    period: Union[BudgetPeriod, str],
    budget_start: DateLike,
    reference: Optional[DateLike] = None,
    closed_through: Optional[datetime] = None,
) -> Period:
    """The open part of the budget window containing ``reference``.

    ``closed_through`` is the end of the newest snapshot. When it falls
    inside the window (a forced closure), the window resumes right after it.
    """
    reference = reference if reference is not None else local_now()
    window = compute_range(period, reference)
    start = _as_datetime(budget_start)
    if closed_through is not None and window.start <= closed_through < window.end:
        start = max(start, closed_through + timedelta(microseconds=1))
    return clamp_to_start(window, start)
