"""Business-day calendar for schedules and deadlines.

Weekend and holiday skipping for scheduled triggers, and the
"shift to next business day" rule for deadlines that land on a weekend
or holiday. Holidays come from settings (``CONDUIT_HOLIDAYS``) plus any
extra dates configured on the trigger itself.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta

# Longest plausible run of consecutive non-business days.
MAX_SHIFT_DAYS = 31


@dataclass(frozen=True)
class BusinessCalendar:
    holidays: frozenset[date] = field(default_factory=frozenset)
    skip_weekends: bool = True
    skip_holidays: bool = True

    @classmethod
    def build(
        cls,
        holidays: Iterable[date] = (),
        extra_holidays: Iterable[date] = (),
        skip_weekends: bool = True,
        skip_holidays: bool = True,
    ) -> BusinessCalendar:
        return cls(
            holidays=frozenset(holidays) | frozenset(extra_holidays),
            skip_weekends=skip_weekends,
            skip_holidays=skip_holidays,
        )

    @staticmethod
    def is_weekend(day: date) -> bool:
        return day.weekday() >= 5

    def is_holiday(self, day: date) -> bool:
        return day in self.holidays

    def is_eligible(self, day: date) -> bool:
        """Whether a schedule may fire on ``day`` under this calendar's skip flags."""
        if self.skip_weekends and self.is_weekend(day):
            return False
        if self.skip_holidays and self.is_holiday(day):
            return False
        return True

    def is_business_day(self, day: date) -> bool:
        return not self.is_weekend(day) and not self.is_holiday(day)

    def next_business_day(self, day: date) -> date:
        """``day`` itself if it is a business day, else the next one."""
        shifted = day
        for _ in range(MAX_SHIFT_DAYS):
            if self.is_business_day(shifted):
                return shifted
            shifted += timedelta(days=1)
        return shifted


def deadline_in_month(year: int, month: int, day_of_month: int) -> date:
    """``day_of_month`` in the given month, clamped to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def recurring_deadlines(today: date, day_of_month: int, months_ahead: int = 2) -> list[date]:
    """This month's and the following months' deadline dates."""
    deadlines = []
    year, month = today.year, today.month
    for _ in range(months_ahead):
        deadlines.append(deadline_in_month(year, month, day_of_month))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return deadlines


__all__ = ["BusinessCalendar", "deadline_in_month", "recurring_deadlines", "MAX_SHIFT_DAYS"]
