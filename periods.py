from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def label(self) -> str:
        return self.start.strftime("%B")


def month_period(day: date) -> Period:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period("month", first, next_month - date.resolution)


def previous_month_period(day: date) -> Period:
    last_month_end = day.replace(day=1) - date.resolution
    return Period("last_month", last_month_end.replace(day=1), last_month_end)


def same_month(a: date, b: date) -> bool:
    return a.year == b.year and a.month == b.month
