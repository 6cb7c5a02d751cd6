from collections.abc import Iterator
from datetime import date, datetime
from typing import NamedTuple


class MonthKey(NamedTuple):
    year: int
    month: int

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @classmethod
    def parse(cls, value: str) -> "MonthKey":
        year, _, month = value.partition("-")
        key = cls(int(year), int(month))
        if not 1 <= key.month <= 12:
            raise ValueError(f"invalid month key: {value!r}")
        return key

    @classmethod
    def of(cls, value: date | datetime) -> "MonthKey":
        return cls(value.year, value.month)

    def previous(self) -> "MonthKey":
        if self.month == 1:
            return MonthKey(self.year - 1, 12)
        return MonthKey(self.year, self.month - 1)

    def next(self) -> "MonthKey":
        if self.month == 12:
            return MonthKey(self.year + 1, 1)
        return MonthKey(self.year, self.month + 1)

    def adjacent(self) -> tuple["MonthKey", "MonthKey", "MonthKey"]:
        """
        Previous, current and next month, in that order.
        """
        return (self.previous(), self, self.next())

    def first_day(self) -> date:
        return date(self.year, self.month, 1)


def months_of_year(year: int) -> list[MonthKey]:
    return [MonthKey(year, m) for m in range(1, 13)]


def months_between(start: date, end: date) -> Iterator[MonthKey]:
    """
    Every month touched by the inclusive range [start, end].
    """
    if end < start:
        start, end = end, start
    key = MonthKey.of(start)
    last = MonthKey.of(end)
    while key <= last:
        yield key
        key = key.next()
