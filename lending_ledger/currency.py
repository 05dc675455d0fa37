"""
Money Module

Decimal helpers for rupee amounts. NEVER uses float for monetary values:
every amount entering the ledger goes through to_decimal so that storage
strings, ints and user input compare and sum exactly.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency code with precision info"""
    INR = ("INR", 2, "₹")

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol


ZERO = Decimal('0')


def to_decimal(value: Any) -> Decimal:
    """
    Convert a stored or user-supplied value to Decimal.

    Floats are routed through str() so 0.1 becomes Decimal('0.1') rather
    than its binary expansion.
    """
    if isinstance(value, Decimal):
        result = value
    elif value is None:
        return ZERO
    elif isinstance(value, bool):
        raise ValidationError(f"Not a monetary amount: {value!r}")
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Not a monetary amount: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Not a monetary amount: {value!r}")
    return result


def quantize(amount: Decimal, currency: Currency = Currency.INR) -> Decimal:
    """Round to currency precision, half-up"""
    return to_decimal(amount).quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


@dataclass(frozen=True)
class Money:
    """
    Immutable money value used for display and audit metadata.
    Calculators work on raw Decimal; Money only formats.
    """
    amount: Decimal
    currency: Currency = Currency.INR

    def __post_init__(self):
        object.__setattr__(self, 'amount', quantize(self.amount, self.currency))

    def is_zero(self) -> bool:
        return self.amount == ZERO

    def is_negative(self) -> bool:
        return self.amount < ZERO

    def to_string(self) -> str:
        """Format for display, e.g. ₹1,500.00"""
        sign = "-" if self.is_negative() else ""
        return f"{sign}{self.currency.symbol}{abs(self.amount):,.{self.currency.precision}f}"


def format_amount(amount: Any) -> str:
    """Shortcut for log and audit descriptions"""
    return Money(to_decimal(amount)).to_string()
