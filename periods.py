from dataclasses import dataclass
from datetime import date
from typing import Optional

from recurrence import add_months, local_today

EPOCH = date(2000, 1, 1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    first = month_start(d)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_period(period: Optional[str], *, today: Optional[date] = None) -> Period:
    """Map a statistics period keyword to an inclusive date range.

    Unknown or missing keywords fall back to the current month.
    """
    today = today or local_today()
    if period == "quarter":
        return Period("quarter", add_months(today, -3), today)
    if period == "year":
        return Period("year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "all":
        return Period("all", EPOCH, today)
    return Period("month", month_start(today), month_end(today))


def trailing_months(today: date, count: int) -> list[Period]:
    """``count`` calendar months ending with the month containing ``today``."""
    first = month_start(today)
    months = []
    for offset in range(count - 1, -1, -1):
        start = add_months(first, -offset)
        months.append(Period(start.strftime("%b %Y"), start, month_end(start)))
    return months
