from decimal import Decimal

import pytest

from studiocrm.services import pricing


def test_quantize_money_rounding_modes() -> None:
    assert pricing.quantize_money(Decimal("1.005"), rounding="half_up") == Decimal("1.01")
    assert pricing.quantize_money(Decimal("1.005"), rounding="half_even") == Decimal("1.00")
    assert pricing.quantize_money(Decimal("1.015"), rounding="half_even") == Decimal("1.02")
    assert pricing.quantize_money(Decimal("1.001"), rounding="up") == Decimal("1.01")
    assert pricing.quantize_money(Decimal("1.009"), rounding="down") == Decimal("1.00")


def test_to_decimal_rejects_non_numbers() -> None:
    assert pricing.to_decimal("19.99") == Decimal("19.99")
    assert pricing.to_decimal(5) == Decimal("5")
    assert pricing.to_decimal(0.1) == Decimal("0.1")
    for bad in (None, True, "abc", "NaN", "Infinity", ""):
        assert pricing.to_decimal(bad) is None


def test_cents_conversion() -> None:
    assert pricing.to_cents("95") == 9500
    assert pricing.to_cents(0.1) + pricing.to_cents(0.2) == 30
    assert pricing.to_cents(Decimal("1.005")) == 101
    assert pricing.to_cents(Decimal("1.005"), rounding="down") == 100
    assert pricing.from_cents(4750) == Decimal("47.50")
    with pytest.raises(ValueError):
        pricing.to_cents("twelve")


def test_percent_of_cents_clamps_and_rounds() -> None:
    assert pricing.percent_of_cents(10000, Decimal("50")) == 5000
    assert pricing.percent_of_cents(999, Decimal("50")) == 500
    assert pricing.percent_of_cents(999, Decimal("50"), rounding="half_even") == 500
    assert pricing.percent_of_cents(1001, Decimal("50"), rounding="half_even") == 500
    assert pricing.percent_of_cents(10000, Decimal("150")) == 10000
    assert pricing.percent_of_cents(10000, Decimal("-5")) == 0
