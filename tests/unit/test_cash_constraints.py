"""Unit tests for deployable cash under a target cash floor."""

import pytest

from tradeflow.services.cash_constraints import calculate_deployable_cash


class TestCalculateDeployableCash:
    def test_cash_above_floor(self):
        """Cash beyond the floor is deployable."""
        assert calculate_deployable_cash(30000, 100000, 20) == pytest.approx(10000)

    def test_cash_below_floor_is_zero(self):
        """$10k cash against a $10k floor on $50k leaves nothing to deploy."""
        assert calculate_deployable_cash(10000, 50000, 20) == 0.0

    def test_never_negative(self):
        assert calculate_deployable_cash(1000, 100000, 20) == 0.0

    def test_never_exceeds_available_cash(self):
        assert calculate_deployable_cash(5000, 100000, 0) == 5000

    def test_target_is_clamped(self):
        """Targets outside 0-100 are clamped."""
        assert calculate_deployable_cash(5000, 10000, -10) == 5000
        assert calculate_deployable_cash(5000, 10000, 150) == 0.0

    def test_zero_portfolio_value(self):
        assert calculate_deployable_cash(0, 0, 20) == 0.0
