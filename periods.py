"""UTC calendar-month helpers.

Transaction dates are stored as UTC instants and queried by UTC month
boundaries, so every month computation here works in UTC.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

_YEAR_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


@dataclass(frozen=True)
class MonthRange:
    label: str  # YYYY-MM
    start: datetime  # inclusive, UTC
    end: datetime  # exclusive, UTC

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def contains(self, instant: datetime) -> bool:
        return self.start <= as_utc(instant) < self.end


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_year_month(value: str) -> bool:
    return bool(_YEAR_MONTH_RE.match(value))


def parse_year_month(value: str) -> Optional[tuple[int, int]]:
    if not is_year_month(value):
        return None
    year_str, month_str = value.split("-", 1)
    year = int(year_str)
    month = int(month_str)
    if month < 1 or month > 12 or year < 1:
        return None
    return year, month


def _range_for(year: int, month: int) -> MonthRange:
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        if year == 9999:
            end = datetime.max.replace(tzinfo=timezone.utc)
        else:
            end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return MonthRange(f"{year:04d}-{month:02d}", start, end)


def month_range_utc_strict(label: str) -> Optional[MonthRange]:
    parsed = parse_year_month(label)
    if parsed is None:
        return None
    return _range_for(*parsed)


def month_range_utc(
    label: Optional[str] = None, now: Optional[datetime] = None
) -> MonthRange:
    """Resolve a ``YYYY-MM`` label, falling back to the current UTC month."""
    if label:
        strict = month_range_utc_strict(label)
        if strict is not None:
            return strict
    current = as_utc(now) if now is not None else utcnow()
    return _range_for(current.year, current.month)


def remaining_days_in_month_utc(now: Optional[datetime] = None) -> int:
    """Inclusive count of days left in the UTC month of ``now``.

    In a 31-day month: the 13th gives 19, the 31st gives 1.
    """
    current = as_utc(now) if now is not None else utcnow()
    last_day = calendar.monthrange(current.year, current.month)[1]
    return max(1, last_day - current.day + 1)


def remaining_days_in_range(month: MonthRange, now: Optional[datetime] = None) -> int:
    """Remaining days of ``month`` as seen from ``now``.

    A month that has not started yet is counted in full; a month that is
    already over has one day left, so callers can always divide by it.
    """
    current = as_utc(now) if now is not None else utcnow()
    if current < month.start:
        return month.days
    if current >= month.end:
        return 1
    return remaining_days_in_month_utc(current)
