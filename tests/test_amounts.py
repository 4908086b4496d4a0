from decimal import Decimal

import pytest

from gacha_x402.amounts import format_amount, from_base_units, parse_amount, to_base_units


@pytest.mark.parametrize(
    "amount, expected",
    [("0.01", 10_000), ("0.010", 10_000), ("5", 5_000_000), ("0.0000019", 1), ("1.2345679", 1_234_567)],
)
def test_to_base_units_truncates(amount, expected):
    assert to_base_units(amount) == expected


def test_from_base_units():
    assert from_base_units(10_000) == Decimal("0.01")


@pytest.mark.parametrize(
    "amount, expected",
    [("0.01", "0.010"), ("5", "5.000"), ("0.0015", "0.0015"), ("0.1234567", "0.123456"), ("999", "999.000")],
)
def test_format_amount(amount, expected):
    assert format_amount(amount) == expected


@pytest.mark.parametrize("value", [0.1, True, "abc", "-1", "NaN", "Infinity"])
def test_parse_amount_rejects_invalid(value):
    with pytest.raises(ValueError):
        parse_amount(value)
