from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Literal


MONEY_QUANT = Decimal("0.01")
CENTS_PER_UNIT = 100

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def quantize_money(value: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return Decimal(value).quantize(MONEY_QUANT, rounding=mode)


def to_decimal(value: object) -> Decimal | None:
    """Coerce ints, floats, strings and Decimals to Decimal; None for anything non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def to_cents(value: Decimal | float | int | str, *, rounding: MoneyRounding = "half_up") -> int:
    amount = to_decimal(value)
    if amount is None:
        raise ValueError(f"Not a money amount: {value!r}")
    return int(quantize_money(amount, rounding=rounding) * CENTS_PER_UNIT)


def from_cents(cents: int) -> Decimal:
    return quantize_money(Decimal(int(cents)) / CENTS_PER_UNIT)


def percent_of_cents(cents: int, percent: Decimal, *, rounding: MoneyRounding = "half_up") -> int:
    """`percent`% of an integer cent amount, rounded to whole cents."""
    pct = min(max(Decimal(percent), Decimal("0")), Decimal("100"))
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return int((Decimal(int(cents)) * pct / Decimal("100")).quantize(Decimal("1"), rounding=mode))
