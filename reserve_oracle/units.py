"""Fixed-point helpers (18-decimal amounts, 6-decimal ratios)"""

from decimal import Decimal
from typing import Union

PRICE_DECIMALS = 18
PRECISION = 10**PRICE_DECIMALS

RATIO_DECIMALS = 6
RATIO_PRECISION = 10**RATIO_DECIMALS

BPS = 10_000


def to_fixed(value: Union[int, float, str, Decimal], decimals: int = PRICE_DECIMALS) -> int:
    """Convert a human-readable number to fixed point (truncating)"""
    return int(Decimal(str(value)) * (10**decimals))


def from_fixed(value: int, decimals: int = PRICE_DECIMALS) -> Decimal:
    """Convert fixed point back to a Decimal"""
    return Decimal(value) / (10**decimals)


def rescale(value: int, from_decimals: int, to_decimals: int = PRICE_DECIMALS) -> int:
    """Shift a fixed-point integer between decimal scales by powers of ten"""
    if from_decimals < 0 or to_decimals < 0:
        raise ValueError("decimals must be non-negative")
    if from_decimals == to_decimals:
        return value
    if from_decimals < to_decimals:
        return value * 10 ** (to_decimals - from_decimals)
    return value // 10 ** (from_decimals - to_decimals)


def deviation_bps(old: int, new: int) -> int:
    """Relative change |new-old| / old in basis points (0 when old == 0)"""
    if old == 0:
        return 0
    return abs(new - old) * BPS // old


def ratio(numerator: int, denominator: int) -> int:
    """numerator / denominator as a 6-decimal fixed-point ratio"""
    if denominator == 0:
        return 0
    return numerator * RATIO_PRECISION // denominator
