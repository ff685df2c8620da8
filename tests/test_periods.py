import calendar
from datetime import datetime, timedelta, timezone

import pytest

from periods import (
    month_range_utc,
    month_range_utc_strict,
    parse_year_month,
    remaining_days_in_month_utc,
    remaining_days_in_range,
)

NOW = datetime(2025, 12, 13, 12, 0, tzinfo=timezone.utc)


def test_month_range_for_label() -> None:
    rng = month_range_utc("2024-02", NOW)
    assert rng.label == "2024-02"
    assert rng.start == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert rng.end == datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "label", ["2023-01", "2023-02", "2024-02", "2024-04", "2025-06", "2025-12"]
)
def test_month_range_spans_exactly_one_calendar_month(label: str) -> None:
    rng = month_range_utc(label, NOW)
    year, month = parse_year_month(label)
    assert rng.start.day == 1
    assert (rng.end - rng.start).days == calendar.monthrange(year, month)[1]
    assert rng.days == calendar.monthrange(year, month)[1]


def test_december_rolls_into_next_year() -> None:
    rng = month_range_utc("2025-12", NOW)
    assert rng.end == datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "label", [None, "", "2024-13", "2024-00", "24-01", "2024-1", "2024/01", "abcd-ef"]
)
def test_invalid_label_falls_back_to_current_utc_month(label) -> None:
    rng = month_range_utc(label, NOW)
    assert rng.label == "2025-12"
    assert rng.start == datetime(2025, 12, 1, tzinfo=timezone.utc)
    assert rng.end == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_fallback_uses_utc_calendar_not_local_offset() -> None:
    # 00:30 on Jan 1st in UTC+3 is still December in UTC.
    local = datetime(2026, 1, 1, 0, 30, tzinfo=timezone(timedelta(hours=3)))
    assert month_range_utc(None, local).label == "2025-12"


def test_strict_parsing_rejects_bad_labels() -> None:
    assert month_range_utc_strict("2024-13") is None
    assert month_range_utc_strict("nope") is None
    assert month_range_utc_strict("2024-07").label == "2024-07"


def test_contains_is_half_open() -> None:
    rng = month_range_utc("2025-12", NOW)
    assert rng.contains(datetime(2025, 12, 1))
    assert rng.contains(datetime(2025, 12, 31, 23, 59, 59))
    assert not rng.contains(datetime(2026, 1, 1))


def test_remaining_days_in_month() -> None:
    assert remaining_days_in_month_utc(datetime(2025, 12, 13, 12, tzinfo=timezone.utc)) == 19
    assert remaining_days_in_month_utc(datetime(2025, 12, 31, 12, tzinfo=timezone.utc)) == 1
    assert remaining_days_in_month_utc(datetime(2025, 12, 1, tzinfo=timezone.utc)) == 31
    assert remaining_days_in_month_utc(datetime(2024, 2, 1, tzinfo=timezone.utc)) == 29


def test_remaining_days_treats_naive_datetimes_as_utc() -> None:
    assert remaining_days_in_month_utc(datetime(2025, 12, 31, 23, 59)) == 1


def test_remaining_days_in_range_relative_to_month() -> None:
    december = month_range_utc("2025-12", NOW)
    assert remaining_days_in_range(december, NOW) == 19
    assert remaining_days_in_range(december, datetime(2025, 11, 20, tzinfo=timezone.utc)) == 31
    assert remaining_days_in_range(december, datetime(2026, 2, 1, tzinfo=timezone.utc)) == 1
