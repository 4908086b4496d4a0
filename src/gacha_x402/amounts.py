"""Decimal amount helpers. Amounts never pass through ``float``."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from .constants import USDC_DECIMALS


def parse_amount(value: str | int | Decimal) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Invalid amount type: {type(value).__name__}")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value}")
    if amount < 0:
        raise ValueError("Amount must be non-negative")
    return amount


def to_base_units(amount: str | Decimal, decimals: int = USDC_DECIMALS) -> int:
    """Convert a human decimal amount to the token's smallest unit, truncating."""
    value = parse_amount(amount)
    scaled = (value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(units: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


def format_amount(amount: Decimal | str, min_places: int = 3, max_places: int = USDC_DECIMALS) -> str:
    """Render an amount with between ``min_places`` and ``max_places`` decimals.

    ``0.01`` -> ``"0.010"``, ``5`` -> ``"5.000"``, ``0.0015`` -> ``"0.0015"``.
    """
    value = parse_amount(amount)
    quantum = Decimal(1).scaleb(-max_places)
    text = f"{value.quantize(quantum, rounding=ROUND_DOWN):f}"
    whole, _, frac = text.partition(".")
    frac = frac.rstrip("0")
    if len(frac) < min_places:
        frac = frac.ljust(min_places, "0")
    return f"{whole}.{frac}" if frac else whole
