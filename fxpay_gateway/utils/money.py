"""Monetary rounding helpers"""

from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")


def round_money(amount: float) -> float:
    """Round half-up to 2 decimals (1.005 -> 1.01, unlike built-in round)"""
    return float(Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP))
