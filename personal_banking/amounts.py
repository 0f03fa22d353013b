"""
Monetary Amount Helpers

Parsing, quantisation and display of money amounts. All balances and
payments are Decimal values with two places; float is never used for money.
"""

from decimal import Decimal, DecimalException, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any, Optional

from .config import get_config
from .errors import InvalidArgumentError

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')


def quantize(amount: Decimal, field_name: str = "amount") -> Decimal:
    """Round to two decimal places, half up"""
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except DecimalException:
        raise InvalidArgumentError(f"{field_name} is out of range")


def parse_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert user input to a Decimal without rounding.

    Accepts Decimal, int, str and float (floats go through str() so that
    0.1 stays 0.1). Raises InvalidArgumentError for anything non-numeric.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidArgumentError(f"{field_name} must be a number")

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidArgumentError(f"{field_name} must be a number, got {value!r}")

    if not result.is_finite():
        raise InvalidArgumentError(f"{field_name} must be a finite number")

    return result


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Convert user input to a Decimal quantised to two places, within max_amount"""
    result = parse_decimal(value, field_name)
    if abs(result) > Decimal(get_config().max_amount):
        raise InvalidArgumentError(f"{field_name} is out of range")
    return quantize(result, field_name)


def to_positive_amount(value: Any, field_name: str = "amount") -> Decimal:
    """Convert input to a Decimal and require it to be strictly positive"""
    amount = to_decimal(value, field_name)
    if amount <= ZERO:
        raise InvalidArgumentError(f"{field_name} must be positive")
    return amount


def format_amount(amount: Decimal, currency_code: str = "INR") -> str:
    """Format for display"""
    return f"{currency_code} {amount:,.2f}"


def to_positive_int(value: Any, field_name: str, maximum: Optional[int] = None) -> int:
    """Convert input to an int >= 1 (terms and tenures in months), at most ``maximum``"""
    if isinstance(value, bool) or value is None:
        raise InvalidArgumentError(f"{field_name} must be a whole number")
    try:
        result = int(str(value).strip())
    except ValueError:
        raise InvalidArgumentError(f"{field_name} must be a whole number, got {value!r}")
    if result < 1:
        raise InvalidArgumentError(f"{field_name} must be at least 1")
    if maximum is not None and result > maximum:
        raise InvalidArgumentError(f"{field_name} must be at most {maximum}")
    return result


def to_months(value: Any, field_name: str) -> int:
    """Loan term or fixed-deposit tenure, bounded by max_term_months"""
    return to_positive_int(value, field_name, maximum=get_config().max_term_months)


def to_interest_rate(value: Any, field_name: str = "interest_rate") -> Decimal:
    """Annual percentage rate between 0 and max_interest_rate inclusive"""
    rate = parse_decimal(value, field_name)
    if rate < 0:
        raise InvalidArgumentError(f"{field_name} cannot be negative")
    if rate > Decimal(get_config().max_interest_rate):
        raise InvalidArgumentError(f"{field_name} is out of range")
    return rate
