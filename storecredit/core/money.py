# storecredit/core/money.py
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Any) -> Decimal:
    """Coerce to a 2dp Decimal. None and garbage become 0.00."""
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return ZERO


def cents_to_money(cents: Any) -> Decimal:
    try:
        return (Decimal(int(cents or 0)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    except (TypeError, ValueError):
        return ZERO


def display(amount: Any) -> str:
    return f"${money(amount):.2f}"
