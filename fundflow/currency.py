"""
Money Precision Module

Fixed-point handling for transfer amounts and balances. Single currency with
two fractional digits. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

PRECISION = 2
CENT = Decimal('0.1') ** PRECISION
ZERO = Decimal('0.00')

# Largest amount or balance the ledger accepts
MAX_AMOUNT = Decimal('999999999999999.99')

AmountLike = Union[Decimal, str, int, float]


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a value to Decimal without going through binary floating point.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a valid amount")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    else:
        raise ValueError(f"Unsupported amount type: {type(value).__name__}")

    if not result.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value!r}")
    return result


def quantize_amount(value: Decimal) -> Decimal:
    """
    Round a Decimal to currency precision

    Raises:
        ValueError: If the value has too many digits to carry cents
    """
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Amount {value} is too large")


def has_valid_precision(value: Decimal) -> bool:
    """True when the value carries no non-zero digit beyond the cent"""
    return value == quantize_amount(value)


def parse_amount(value: AmountLike) -> Decimal:
    """
    Parse a transfer amount.

    Args:
        value: Amount as Decimal, string, int or float

    Returns:
        Positive Decimal quantized to two fractional digits

    Raises:
        ValueError: If the amount is not a positive number with at most two
            fractional digits, or exceeds MAX_AMOUNT
    """
    amount = to_decimal(value)
    if amount <= 0:
        raise ValueError("Amount must be positive")
    if amount > MAX_AMOUNT:
        raise ValueError("Amount is too large")
    if not has_valid_precision(amount):
        raise ValueError("Amount can have at most 2 decimal places")
    return quantize_amount(amount)

