"""Before/after/changes order descriptor from a sizing result."""

from __future__ import annotations

from typing import Optional

from ..schemas.decision import Intent, PositionLeg, SizingResult, TradeDirection, TradeOrder
from ..schemas.portfolio import PositionSnapshot


def _allocation(value: float, total_value: float) -> float:
    return value / total_value * 100 if total_value > 0 else 0.0


def build_trade_order(
    *,
    ticker: str,
    analysis_id: str,
    intent: Intent,
    sizing: SizingResult,
    confidence: float,
    current_price: float,
    total_value: float,
    position: Optional[PositionSnapshot] = None,
) -> TradeOrder:
    """Build the immutable order for a sized decision.

    ``changes`` is computed as ``after - before`` on the same floats, so the
    identity holds exactly for every generated order.
    """
    before_shares = position.qty if position else 0.0
    before_value = position.market_value if position else 0.0
    before = PositionLeg(
        shares=before_shares,
        value=before_value,
        allocation=_allocation(before_value, total_value),
    )

    share_delta = sizing.dollar_amount / current_price if current_price > 0 else 0.0
    if sizing.action == TradeDirection.BUY:
        after_shares = before_shares + share_delta
    elif sizing.action == TradeDirection.SELL:
        after_shares = 0.0 if sizing.close_position else max(before_shares - share_delta, 0.0)
    else:
        after_shares = before_shares

    after_value = after_shares * current_price if current_price > 0 else before_value
    after = PositionLeg(
        shares=after_shares,
        value=after_value,
        allocation=_allocation(after_value, total_value),
    )
    changes = PositionLeg(
        shares=after.shares - before.shares,
        value=after.value - before.value,
        allocation=after.allocation - before.allocation,
    )

    reasoning = (
        f"{sizing.reasoning}. Risk-adjusted position: {sizing.percent_of_portfolio:.1f}% of portfolio. "
        f"Intent: {intent.value}."
    )

    return TradeOrder(
        ticker=ticker,
        analysis_id=analysis_id,
        action=sizing.action,
        intent=intent,
        dollar_amount=sizing.dollar_amount,
        shares=sizing.shares,
        confidence=confidence,
        close_position=sizing.close_position,
        before=before,
        after=after,
        changes=changes,
        reasoning=reasoning,
    )
