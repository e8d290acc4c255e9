# Overview: Decimal money helpers shared by every ledger component.

"""
Money helpers

All monetary amounts are Decimal quantized to cents. Binary floats are never
stored and never compared for equality: comparisons go through the helpers
below, which absorb rounding noise up to TOLERANCE (one cent).
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


CENT = Decimal("0.01")
QUANTITY_STEP = Decimal("0.001")
ZERO = Decimal("0.00")
TOLERANCE = Decimal("0.01")


class MoneyError(ValueError):
    """Raised when a value cannot be interpreted as a monetary amount."""


def to_decimal(value, *, field: str = "amount") -> Decimal:
    """Convert int/str/Decimal/float to an unrounded Decimal."""
    if value is None:
        raise MoneyError(f"{field} is required")
    if isinstance(value, bool):
        raise MoneyError(f"{field} must be numeric")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        # str() keeps the shortest repr (0.1 -> "0.1"), not the binary expansion
        result = Decimal(str(value))
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise MoneyError(f"{field} must be numeric, got {value!r}")
    else:
        raise MoneyError(f"{field} must be numeric, got {type(value).__name__}")

    if not result.is_finite():
        raise MoneyError(f"{field} must be a finite number")
    return result


def to_money(value, *, field: str = "amount") -> Decimal:
    """Convert to Decimal quantized to cents (ROUND_HALF_UP)."""
    return to_decimal(value, field=field).quantize(CENT, rounding=ROUND_HALF_UP)


def to_quantity(value, *, field: str = "quantity") -> Decimal:
    return to_decimal(value, field=field).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_equal(a: Decimal, b: Decimal, tolerance: Decimal = TOLERANCE) -> bool:
    """True when |a - b| <= tolerance."""
    return abs(Decimal(a) - Decimal(b)) <= tolerance


def money_greater(a: Decimal, b: Decimal, tolerance: Decimal = TOLERANCE) -> bool:
    """True when a exceeds b by more than the tolerance."""
    return Decimal(a) - Decimal(b) > tolerance


def money_less(a: Decimal, b: Decimal, tolerance: Decimal = TOLERANCE) -> bool:
    """True when a falls short of b by more than the tolerance."""
    return Decimal(b) - Decimal(a) > tolerance


def non_negative(value: Decimal) -> Decimal:
    return value if value > 0 else ZERO


def format_money(value: Decimal | None) -> str | None:
    """Serialize for JSON: fixed two-decimal string, never a float."""
    if value is None:
        return None
    return str(quantize(Decimal(value)))


def format_quantity(value: Decimal | None) -> str | None:
    if value is None:
        return None
    normalized = Decimal(value).quantize(QUANTITY_STEP).normalize()
    # normalize() turns 10 into 1E+1
    return format(normalized, "f")
