"""
Money Utilities Module

Exact Decimal arithmetic and the engine's rounding policy. Amounts are
rounded to the currency's minor unit with ROUND_HALF_EVEN (banker's
rounding). NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation, getcontext
from enum import Enum
from typing import Any

# High precision for intermediate results; rounding happens only at the minor unit
getcontext().prec = 28

ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for USD"""
        return Decimal('0.1') ** self.precision


def to_decimal(value: Any) -> Decimal:
    """
    Convert a value to Decimal without passing through float.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"Cannot convert {value!r} to Decimal")
    if not result.is_finite():
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    return result


def round_money(amount: Decimal, currency: Currency = Currency.USD) -> Decimal:
    """Round to the currency's minor unit using round-half-even"""
    return to_decimal(amount).quantize(currency.minor_unit, rounding=ROUND_HALF_EVEN)


def format_money(amount: Decimal, currency: Currency = Currency.USD) -> str:
    """Format for display and log messages"""
    rounded = round_money(amount, currency)
    return f"{currency.code} {rounded:,.{currency.precision}f}"
