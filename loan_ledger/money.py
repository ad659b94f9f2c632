"""
Money Helpers Module

Decimal helpers for ledger amounts. Single currency: every amount is a
Decimal rounded half-up to the smallest currency unit. NEVER uses float
for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Iterable, Union

# High precision for intermediate calculations
getcontext().prec = 28

ZERO = Decimal('0')
ONE_HUNDRED = Decimal('100')

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a value to Decimal without going through float

    Raises:
        ValueError: If the value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats; pass Decimal or str")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def quantum(places: int = 2) -> Decimal:
    """Smallest currency unit for the given number of decimal places"""
    return Decimal('0.1') ** places


def quantize(value: Numeric, places: int = 2) -> Decimal:
    """Round to the currency precision (half-up)"""
    return to_decimal(value).quantize(quantum(places), rounding=ROUND_HALF_UP)


def has_valid_precision(value: Decimal, places: int = 2) -> bool:
    """True when the amount carries no digits below the smallest unit"""
    return value == value.quantize(quantum(places))


def normalize_rate(value: Numeric, percent_threshold: Numeric = 1) -> Decimal:
    """
    Normalize a catalogue rate to a fraction.

    Rates above the threshold are stored as percentages (2.0 means 2%),
    rates at or below it are already fractions (0.05 means 5%).
    """
    rate = to_decimal(value)
    if rate > to_decimal(percent_threshold):
        return rate / ONE_HUNDRED
    return rate


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    """Sum Decimals starting from an exact zero"""
    total = ZERO
    for value in values:
        total += value
    return total

