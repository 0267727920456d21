"""
Money arithmetic helpers.

WHAT: Line totals, rounding and numeric sanity checks for offer values
WHY: Totals are recomputed by several engines and must agree to the cent
HOW: Float math rounded to two decimals; NaN/negative values raise InvariantViolation
"""

import math
from typing import Iterable, Tuple

from .exceptions import InvariantViolation
from .logger import get_logger

logger = get_logger(__name__)

MONEY_TOLERANCE = 0.005


def round_money(value: float) -> float:
    """Round to cents."""
    return round(value + 0.0, 2)


def ensure_valid_amount(value: float, context: str) -> float:
    """
    Reject computed amounts that indicate a logic bug.

    Args:
        value: Computed amount
        context: Human-readable label for the log line

    Returns:
        The value unchanged

    Raises:
        InvariantViolation: If value is NaN, infinite or negative
    """
    if value is None or math.isnan(value) or math.isinf(value) or value < 0:
        logger.error(f"Invalid amount computed for {context}: {value}")
        raise InvariantViolation(f"Invalid amount computed for {context}: {value}")
    return value


def line_total(unit_price: float, quantity: int, context: str = "line") -> float:
    """Subtotal for one line, validated."""
    return ensure_valid_amount(round_money(float(unit_price) * int(quantity)), context)


def sum_lines(lines: Iterable[Tuple[float, int]]) -> float:
    """Sum of price * quantity over (price, quantity) pairs."""
    total = 0.0
    for price, quantity in lines:
        total += line_total(price, quantity)
    return round_money(total)


def amounts_equal(a: float, b: float) -> bool:
    return abs(a - b) < MONEY_TOLERANCE
