"""
Money Helpers Module

Decimal precision helpers for loan arithmetic. NEVER uses float for monetary values.
Amounts are plain Decimals in a single currency; only the minor unit is configurable.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, InvalidOperation, getcontext
from typing import Iterable, Union

# Set global decimal context for financial precision
getcontext().prec = 28

DEFAULT_MINOR_UNITS = 2
ZERO = Decimal('0')

Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a value to Decimal without going through float

    Raises:
        ValueError: If the value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def quantum(places: int = DEFAULT_MINOR_UNITS) -> Decimal:
    """Smallest representable amount for the given number of minor-unit places"""
    return Decimal('0.1') ** places if places > 0 else Decimal('1')


def round_money(value: Number, places: int = DEFAULT_MINOR_UNITS) -> Decimal:
    """Round half-up to the currency minor unit"""
    return to_decimal(value).quantize(quantum(places), rounding=ROUND_HALF_UP)


def truncate(value: Number, places: int) -> Decimal:
    """Truncate (round toward zero) to the given number of decimal places"""
    return to_decimal(value).quantize(quantum(places), rounding=ROUND_DOWN)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Sum Decimals, returning Decimal zero for an empty iterable"""
    total = ZERO
    for value in values:
        total += value
    return total


def format_amount(value: Decimal, places: int = DEFAULT_MINOR_UNITS) -> str:
    """Format an amount for display in messages"""
    return f"{round_money(value, places):,.{places}f}"
