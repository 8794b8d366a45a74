"""Unit conversion helpers between SUI and integer MIST."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


MIST_PER_SUI = 1_000_000_000
_SUI_QUANT = Decimal("0.000000001")


def sui_to_mist(value: Decimal | float | int | str) -> int:
    """Convert SUI to MIST, flooring sub-MIST precision."""
    dec = Decimal(str(value)).quantize(_SUI_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MIST_PER_SUI)


def mist_to_sui_decimal(value: int) -> Decimal:
    """Convert integer MIST to Decimal SUI."""
    return (Decimal(value) / Decimal(MIST_PER_SUI)).quantize(_SUI_QUANT)


def mist_to_sui_float(value: int) -> float:
    """Convert integer MIST to float SUI (for display APIs)."""
    return float(mist_to_sui_decimal(value))


def format_sui(value: int) -> str:
    """Format integer MIST as a SUI amount, e.g. ``1.5 SUI``."""
    text = f"{mist_to_sui_decimal(value):f}".rstrip("0")
    if text.endswith("."):
        text += "0"
    return f"{text} SUI"
