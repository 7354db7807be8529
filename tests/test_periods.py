from datetime import date
from decimal import Decimal

import pytest

from money import from_cents, from_micros, to_cents, to_micros, units_for
from periods import LedgerPeriod, resolve_period


def test_period_navigation_wraps_years() -> None:
    december = LedgerPeriod(2024, 12)
    assert december.next() == LedgerPeriod(2025, 1)
    assert LedgerPeriod(2025, 1).previous() == december
    assert december.slug == "2024-12"
    assert december.start == date(2024, 12, 1)
    assert december.end == date(2024, 12, 31)
    assert LedgerPeriod(2024, 2).end == date(2024, 2, 29)


def test_period_rejects_invalid_month() -> None:
    with pytest.raises(ValueError):
        LedgerPeriod(2025, 13)


def test_resolve_period() -> None:
    today = date(2025, 1, 15)
    assert resolve_period(None, today=today) == LedgerPeriod(2025, 1)
    assert resolve_period("this_month", today=today) == LedgerPeriod(2025, 1)
    assert resolve_period("last_month", today=today) == LedgerPeriod(2024, 12)
    assert resolve_period("2023-7", today=today) == LedgerPeriod(2023, 7)
    with pytest.raises(ValueError):
        resolve_period("last_year", today=today)
    with pytest.raises(ValueError):
        resolve_period("2023-00", today=today)


def test_money_conversions_round_half_up() -> None:
    assert to_cents("10.005") == 1001
    assert to_cents(0.1) == 10
    assert from_cents(1250) == Decimal("12.50")
    assert from_cents(-5) == Decimal("-0.05")
    assert to_micros("45.1234565") == 45_123_457
    assert from_micros(20_000_000) == Decimal("20")
    with pytest.raises(ValueError):
        to_cents("ten")


def test_units_for_quantizes_to_four_places() -> None:
    assert units_for(100_000, 20_000_000) == Decimal("50.0000")
    assert units_for(100_000, 30_000_000) == Decimal("33.3333")
    assert units_for(200_000, 30_000_000) == Decimal("66.6667")
