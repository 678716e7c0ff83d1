from datetime import date

import pytest

from periods import month_key, period_for, resolve_month


def test_resolve_month_window() -> None:
    period = resolve_month("2024-12")
    assert period.key == "2024-12"
    assert period.start == date(2024, 12, 1)
    assert period.end == date(2025, 1, 1)
    assert period.contains(date(2024, 12, 31))
    assert not period.contains(date(2025, 1, 1))


def test_resolve_month_rejects_bad_keys() -> None:
    for key in ("2024-00", "2024-1", "24-01", "2024-01-01", "abc"):
        with pytest.raises(ValueError):
            resolve_month(key)


@pytest.mark.parametrize(
    ("today", "key", "start", "end"),
    [
        (date(2024, 2, 15), "2024-Q1", date(2024, 1, 1), date(2024, 4, 1)),
        (date(2024, 6, 30), "2024-Q2", date(2024, 4, 1), date(2024, 7, 1)),
        (date(2024, 11, 3), "2024-Q4", date(2024, 10, 1), date(2025, 1, 1)),
    ],
)
def test_quarterly_periods(today, key, start, end) -> None:
    period = period_for("quarterly", today)
    assert (period.key, period.start, period.end) == (key, start, end)


def test_monthly_and_annual_periods() -> None:
    monthly = period_for("monthly", date(2023, 12, 9))
    assert monthly.key == "2023-12"
    assert monthly.end == date(2024, 1, 1)

    annual = period_for("annual", date(2023, 12, 9))
    assert annual.key == "2023"
    assert (annual.start, annual.end) == (date(2023, 1, 1), date(2024, 1, 1))


def test_unknown_period_type_raises() -> None:
    with pytest.raises(ValueError, match="period type"):
        period_for("weekly", date(2024, 1, 1))


def test_month_key_formatting() -> None:
    assert month_key(date(987, 3, 4)) == "0987-03"
