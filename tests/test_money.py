"""Tests for micro-unit money helpers."""

from decimal import Decimal

from governor.money import (
    amount_to_micros,
    format_amount,
    format_micros,
    limit_to_micros,
    micros_to_decimal,
    micros_to_float,
    micros_to_minor_units,
)


def test_amounts_round_up_and_limits_round_down():
    assert amount_to_micros("0.0000001") == 1
    assert limit_to_micros("0.0000019") == 1
    assert amount_to_micros(0.1) + amount_to_micros(0.2) == limit_to_micros(0.3)


def test_micros_back_to_amounts():
    assert micros_to_decimal(1_500_000) == Decimal("1.500000")
    assert micros_to_float(19_750_000) == 19.75


def test_minor_units_round_half_up():
    assert micros_to_minor_units(12_500_000) == 1250
    assert micros_to_minor_units(10_005_000) == 1001


def test_format():
    assert format_amount(1234.5) == "$1,234.50"
    assert format_amount(100) == "$100.00"
    assert format_micros(50_010_000) == "$50.01"
