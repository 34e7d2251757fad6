from dataclasses import dataclass
from datetime import date, datetime
from typing import Union

from recurrence import days_in_month

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def label(self) -> str:
        return self.start.strftime("%B %Y")


def month_period(day: DateLike) -> Period:
    first = date(day.year, day.month, 1)
    last = first.replace(day=days_in_month(day.year, day.month))
    return Period(first.strftime("%Y-%m"), first, last)


def previous_month_period(day: DateLike) -> Period:
    first_this = date(day.year, day.month, 1)
    last_month_end = first_this - date.resolution
    return month_period(last_month_end)


def same_month(a: DateLike, b: DateLike) -> bool:
    return (a.year, a.month) == (b.year, b.month)


def is_earlier_month(a: DateLike, b: DateLike) -> bool:
    """True when ``a`` falls in a calendar month strictly before ``b``'s."""
    return (a.year, a.month) < (b.year, b.month)
