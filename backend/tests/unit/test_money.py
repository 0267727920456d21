"""
Tests for money helpers.

WHAT: Test rounding, line totals and invalid amount detection
WHY: Offer and order totals must agree to the cent across engines
HOW: Direct calls with edge values
"""

import pytest

from offer_engine.utils.exceptions import InvariantViolation
from offer_engine.utils.money import (
    amounts_equal,
    ensure_valid_amount,
    line_total,
    round_money,
    sum_lines,
)


@pytest.mark.unit
class TestMoney:
    """Test money arithmetic."""

    def test_round_money(self):
        """Values round to two decimals."""
        assert round_money(10.004) == 10.0
        assert round_money(2.675 + 0.001) == 2.68

    def test_line_total(self):
        """Line totals are price times quantity."""
        assert line_total(5.0, 10) == 50.0
        assert line_total(0.1, 3) == 0.3

    def test_sum_lines(self):
        """Scenario totals add up."""
        assert sum_lines([(5.0, 10), (8.0, 5)]) == 90.0
        assert sum_lines([(6.0, 10), (8.0, 5)]) == 100.0
        assert sum_lines([]) == 0.0

    def test_zero_line_is_valid(self):
        """Removed lines contribute zero."""
        assert line_total(0.0, 0) == 0.0

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), -0.01, None])
    def test_invalid_amounts_raise(self, value):
        """NaN, infinite and negative amounts are logic bugs."""
        with pytest.raises(InvariantViolation):
            ensure_valid_amount(value, "test")

    def test_negative_line_raises(self):
        """A negative price cannot produce a line total."""
        with pytest.raises(InvariantViolation):
            line_total(-1.0, 2)

    def test_amounts_equal(self):
        """Comparison tolerates sub-cent float noise."""
        assert amounts_equal(0.1 + 0.2, 0.3)
        assert not amounts_equal(1.0, 1.01)
