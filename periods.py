from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


_MONTH_SLUG = re.compile(r"^(\d{4})-(\d{1,2})$")


@dataclass(frozen=True, order=True)
class LedgerPeriod:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @classmethod
    def of(cls, day: date) -> LedgerPeriod:
        return cls(day.year, day.month)

    @property
    def slug(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return self.next().start - date.resolution

    def next(self) -> LedgerPeriod:
        if self.month == 12:
            return LedgerPeriod(self.year + 1, 1)
        return LedgerPeriod(self.year, self.month + 1)

    def previous(self) -> LedgerPeriod:
        if self.month == 1:
            return LedgerPeriod(self.year - 1, 12)
        return LedgerPeriod(self.year, self.month - 1)


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def resolve_period(
    period: Optional[str],
    *,
    today: Optional[date] = None,
) -> LedgerPeriod:
    today = today or local_today()
    current = LedgerPeriod.of(today)
    if not period or period == "this_month":
        return current
    if period == "last_month":
        return current.previous()
    match = _MONTH_SLUG.match(period.strip())
    if not match:
        raise ValueError(f"Unknown period: {period}")
    return LedgerPeriod(int(match.group(1)), int(match.group(2)))
