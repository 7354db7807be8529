from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
UNIT_PLACES = Decimal("0.0001")
UNITS_SCALE = 10_000
NAV_SCALE = 1_000_000
# Keeps stored integers and running sums well inside SQLite's 64-bit range.
MAX_CENTS = 10**15
MAX_NAV_MICROS = 10**15
MAX_UNITS_SCALED = 10**15

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps floats such as 0.1 from dragging binary noise along.
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid number: {value!r}") from exc


def to_cents(value: Number) -> int:
    amount = to_decimal(value)
    if not amount.is_finite():
        raise ValueError(f"Invalid number: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def to_micros(value: Number) -> int:
    nav = to_decimal(value)
    if not nav.is_finite():
        raise ValueError(f"Invalid number: {value!r}")
    return int((nav * NAV_SCALE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_micros(micros: int) -> Decimal:
    return Decimal(micros) / NAV_SCALE


def units_from_scaled(scaled: int) -> Decimal:
    return (Decimal(scaled) / UNITS_SCALE).quantize(UNIT_PLACES)


def units_to_scaled(units: Decimal) -> int:
    return int(
        (units.quantize(UNIT_PLACES, rounding=ROUND_HALF_UP) * UNITS_SCALE)
        .to_integral_value()
    )


def units_for(amount_cents: int, nav_micros: int) -> Decimal:
    """Units bought for ``amount_cents`` at ``nav_micros``, to four places."""
    units = (Decimal(amount_cents) / 100) / (Decimal(nav_micros) / NAV_SCALE)
    return units.quantize(UNIT_PLACES, rounding=ROUND_HALF_UP)
