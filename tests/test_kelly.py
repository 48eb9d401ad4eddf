"""
Tests for core/kelly.py

Run with: pytest tests/test_kelly.py -v
"""

import math

import pytest

from combo_edge.core.kelly import full_kelly, kelly_fraction, kelly_stake
from combo_edge.exceptions import DegenerateInputError


class TestKellyFraction:
    """Test strict fractional Kelly."""

    def test_docstring_examples(self):
        assert kelly_fraction(0.60, 2.0) == pytest.approx(0.05)
        assert kelly_fraction(0.40, 2.0) == 0.0
        assert kelly_fraction(0.60, 2.0, fractional_divisor=2.0) == pytest.approx(0.10)

    def test_cap_applies(self):
        assert kelly_fraction(0.9, 3.0, fractional_divisor=1.0) == pytest.approx(0.20)

    def test_divisor_below_one_treated_as_one(self):
        assert kelly_fraction(0.6, 2.0, fractional_divisor=0.5) == pytest.approx(0.20)

    @pytest.mark.parametrize("p,o", [(0.0, 2.0), (1.0, 2.0), (0.5, 1.0), (0.5, 0.8)])
    def test_degenerate_inputs_raise(self, p, o):
        with pytest.raises(DegenerateInputError):
            kelly_fraction(p, o)

    def test_degenerate_error_is_value_error(self):
        with pytest.raises(ValueError):
            kelly_fraction(0.5, 1.0)


class TestKellyStake:
    """Test the tolerant cash-stake helper."""

    def test_matches_formula(self):
        # f* = 0.2, 600 * 0.2 / 4 = 30
        assert kelly_stake(0.6, 2.0, 4.0, 600.0, 72.0) == pytest.approx(30.0)
        assert full_kelly(0.6, 2.0) == pytest.approx(0.2)

    def test_clipped_to_risk_cap(self):
        assert kelly_stake(0.9, 3.0, 1.0, 600.0, 72.0) == pytest.approx(72.0)

    def test_negative_edge_is_zero(self):
        assert kelly_stake(0.3, 2.0, 4.0, 600.0, 72.0) == 0.0

    @pytest.mark.parametrize("odds", [1.0, 0.5, float("nan"), float("inf")])
    def test_bad_odds_give_zero(self, odds):
        stake = kelly_stake(0.6, odds, 4.0, 600.0, 72.0)
        assert stake == 0.0
        assert not math.isnan(stake)

    def test_non_positive_capital_or_cap(self):
        assert kelly_stake(0.6, 2.0, 4.0, 0.0, 72.0) == 0.0
        assert kelly_stake(0.6, 2.0, 4.0, 600.0, 0.0) == 0.0
