"""Deployable cash under a target cash-allocation floor."""

from __future__ import annotations


def calculate_deployable_cash(
    available_cash: float,
    total_value: float,
    target_cash_percent: float,
) -> float:
    """Maximum dollars a new BUY may spend without breaching the cash floor.

    ``max(0, min(cash, cash - target% * total_value))``. The target is
    clamped to 0-100. SELL and HOLD are not bounded by this value.

    Args:
        available_cash: Cash net of capital reserved by open orders
        total_value: Total portfolio value
        target_cash_percent: Target cash allocation in percent

    Returns:
        Deployable cash, never negative and never above ``available_cash``
    """
    target_fraction = min(max(target_cash_percent, 0.0), 100.0) / 100
    cash_floor = target_fraction * max(total_value, 0.0)
    return max(0.0, min(available_cash, available_cash - cash_floor))
