"""Money conversion helpers using fixed micro-dollar precision."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP


MICROS_PER_UNIT = 1_000_000
_UNIT_QUANT = Decimal("0.000001")
_CENT_QUANT = Decimal("0.01")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Exact decimal for a float, using its shortest repr (0.1 stays 0.1)."""
    return Decimal(str(value))


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to micros, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_UNIT_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_UNIT)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a limit to micros, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_UNIT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_UNIT)


def micros_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_UNIT)).quantize(_UNIT_QUANT)


def micros_to_float(value: int) -> float:
    """Convert integer micros to a float amount (for display APIs)."""
    return float(micros_to_decimal(value))


def micros_to_minor_units(value: int) -> int:
    """Convert micros to cents, rounding half up (card issuer APIs)."""
    cents = micros_to_decimal(value).quantize(_CENT_QUANT, rounding=ROUND_HALF_UP)
    return int(cents * 100)


def format_amount(value: Decimal | float | int) -> str:
    """Format an amount as `$1,234.56`."""
    dec = Decimal(str(value)).quantize(_CENT_QUANT, rounding=ROUND_HALF_UP)
    return f"${dec:,.2f}"


def format_micros(value: int) -> str:
    return format_amount(micros_to_decimal(value))
