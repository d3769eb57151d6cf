"""Position sizing: confidence tiers, position bounds and cash caps."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import structlog

from ..schemas.decision import Intent, SizingResult, TradeDirection
from ..schemas.policy import RiskLevel, UserPolicy
from ..schemas.portfolio import PositionSnapshot

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConfidenceBand:
    """Multiplier band starting at ``threshold`` confidence.

    The multiplier interpolates from ``low_multiplier`` at the threshold to
    ``high_multiplier`` at the next band's threshold (or 100).
    """

    threshold: float
    low_multiplier: float
    high_multiplier: float


# Ordered from the highest band down; below the last band the signal is too weak to size.
CONFIDENCE_TIERS: Dict[RiskLevel, Tuple[ConfidenceBand, ...]] = {
    RiskLevel.CONSERVATIVE: (
        ConfidenceBand(84.0, 2.0, 3.0),
        ConfidenceBand(74.0, 1.0, 1.5),
    ),
    RiskLevel.MODERATE: (
        ConfidenceBand(80.0, 3.0, 4.0),
        ConfidenceBand(70.0, 1.5, 2.0),
        ConfidenceBand(60.0, 1.0, 1.0),
    ),
    RiskLevel.AGGRESSIVE: (
        ConfidenceBand(76.0, 4.0, 6.0),
        ConfidenceBand(66.0, 2.0, 3.0),
        ConfidenceBand(56.0, 1.0, 1.0),
    ),
}

_RISK_CONFIDENCE_FACTORS = {
    RiskLevel.CONSERVATIVE: 0.95,
    RiskLevel.MODERATE: 1.0,
    RiskLevel.AGGRESSIVE: 1.05,
}


def confidence_multiplier(confidence: float, risk_level: RiskLevel) -> Optional[float]:
    """Sizing multiplier for a confidence score, or None when below every band."""
    upper = 100.0
    for band in CONFIDENCE_TIERS[risk_level]:
        if confidence >= band.threshold:
            span = upper - band.threshold
            fraction = (min(confidence, upper) - band.threshold) / span if span > 0 else 0.0
            return band.low_multiplier + (band.high_multiplier - band.low_multiplier) * fraction
        upper = band.threshold
    return None


def adjust_confidence_for_risk_level(confidence: float, risk_level: RiskLevel) -> float:
    """Scale confidence by the risk profile (conservative -5%, aggressive +5%)."""
    adjusted = round(confidence * _RISK_CONFIDENCE_FACTORS[risk_level])
    return float(min(max(adjusted, 0), 100))


# A SELL this close to the whole position closes it instead of leaving a sliver
FULL_CLOSE_TOLERANCE = 0.05


def should_close_full_position(
    sell_amount: float,
    position_value: float,
    tolerance: float = FULL_CLOSE_TOLERANCE,
) -> bool:
    if position_value <= 0 or sell_amount <= 0:
        return False
    return abs(sell_amount - position_value) / position_value <= tolerance


def round_to_increment(amount: float, increment: Optional[float]) -> float:
    """Round to the nearest increment; a positive amount below one increment rounds up to it."""
    if amount <= 0:
        return 0.0
    if not increment or increment <= 0:
        return amount
    if amount < increment:
        return increment
    return round(amount / increment) * increment


@dataclass(frozen=True)
class SizingRequest:
    """Everything the sizer needs for one ticker decision."""

    ticker: str
    intent: Intent
    direction: TradeDirection
    confidence: float
    policy: UserPolicy
    total_value: float
    deployable_cash: float
    available_cash: float
    current_price: float
    position: Optional[PositionSnapshot] = None
    has_pending_sell: bool = False
    # Dollar amount proposed by the portfolio-manager model; replaces tier sizing
    requested_amount: Optional[float] = None

    @property
    def position_value(self) -> float:
        if self.position is None:
            return 0.0
        return max(self.position.market_value, 0.0)


class PositionSizer:
    """Turns an intent into a bounded dollar amount and share count."""

    def size(self, request: SizingRequest) -> SizingResult:
        """Size a trade.

        Args:
            request: Intent, policy, portfolio figures and optional AI amount

        Returns:
            Sizing result; HOLD when the trade cannot be sized within bounds
        """
        if request.total_value <= 0:
            return self._hold(request, "Portfolio value unavailable; no position adjustment")

        if request.direction == TradeDirection.BUY:
            result = self._size_buy(request)
        elif request.direction == TradeDirection.SELL:
            result = self._size_sell(request)
        else:
            result = self._size_hold(request)

        logger.info(
            "Position sized",
            ticker=request.ticker,
            intent=request.intent.value,
            action=result.action.value,
            dollar_amount=round(result.dollar_amount, 2),
            close_position=result.close_position,
        )
        return result

    def _base_amount(self, request: SizingRequest) -> Tuple[Optional[float], str]:
        """Starting dollar amount before bounds are applied.

        Args:
            request: Sizing request

        Returns:
            (amount, reason); amount is None when confidence is below every band
        """
        policy = request.policy
        if request.requested_amount is not None:
            return (
                max(request.requested_amount, 0.0),
                f"Portfolio manager requested ${request.requested_amount:,.0f}",
            )

        multiplier = confidence_multiplier(request.confidence, policy.risk_level)
        if multiplier is None:
            return (
                None,
                f"Confidence {request.confidence:.0f}% is below the {policy.risk_level.value} sizing threshold",
            )

        amount = policy.default_position_size_dollars * multiplier
        return (
            amount,
            f"Position sized at {multiplier:.2f}x the ${policy.default_position_size_dollars:,.0f} default "
            f"for {request.confidence:.0f}% confidence and {policy.risk_level.value} risk profile",
        )

    def _size_buy(self, request: SizingRequest) -> SizingResult:
        policy = request.policy
        amount, reason = self._base_amount(request)
        if amount is None:
            return self._hold(request, reason)

        max_dollars = policy.max_position_dollars(request.total_value)
        amount = min(amount, max_dollars)
        amount = round_to_increment(amount, policy.position_increment_dollars)

        # A BUY must leave the position at or above the minimum viable size
        min_dollars = policy.min_position_dollars(request.total_value)
        required = max(0.0, min_dollars - request.position_value)
        if amount < required:
            reason = f"{reason}; raised to ${required:,.2f} to reach the minimum position size"
            amount = required

        cap = min(request.deployable_cash, request.available_cash, max_dollars)
        if cap <= 0:
            return self._hold(
                request,
                "Allowed deployable cash is exhausted due to "
                f"{policy.target_cash_allocation_percent:.0f}% target cash floor",
            )
        capped = amount > cap
        if capped:
            reason = f"{reason}; capped at ${cap:,.2f} of deployable cash"
            amount = cap

        # A cash-capped BUY, top-ups included, must still reach the minimum position size
        if amount <= 0 or amount < required or (capped and amount < min_dollars):
            return self._hold(
                request,
                f"Insufficient deployable cash (${cap:,.2f}) for minimum position size (${min_dollars:,.2f})",
            )

        shares = math.floor(amount / request.current_price) if request.current_price > 0 else 0
        return SizingResult(
            action=TradeDirection.BUY,
            dollar_amount=amount,
            shares=float(shares),
            percent_of_portfolio=amount / request.total_value * 100,
            reasoning=reason,
        )

    def _size_sell(self, request: SizingRequest) -> SizingResult:
        policy = request.policy
        position = request.position
        value = request.position_value
        if position is None or position.qty <= 0 or value <= 0:
            return self._hold(request, f"No position in {request.ticker} to sell")

        min_dollars = policy.min_position_dollars(request.total_value)

        if request.intent == Intent.EXIT:
            return self._full_sell(request, "Exiting the full position")

        amount, reason = self._base_amount(request)
        if amount is None:
            return self._hold(request, reason)

        amount = min(amount, policy.max_position_dollars(request.total_value))
        amount = min(round_to_increment(amount, policy.position_increment_dollars), value)

        if value < min_dollars:
            return self._full_sell(
                request,
                f"Position value ${value:,.2f} is below the ${min_dollars:,.2f} minimum; selling the full position",
            )

        remaining = value - amount
        if remaining <= 0:
            return self._full_sell(request, reason)
        if should_close_full_position(amount, value):
            return self._full_sell(
                request,
                f"Sell of ${amount:,.2f} is within {FULL_CLOSE_TOLERANCE:.0%} of the ${value:,.2f} position; "
                "selling the full position",
            )
        if remaining < min_dollars:
            return self._full_sell(
                request,
                f"Partial sell would leave ${remaining:,.2f} below the ${min_dollars:,.2f} minimum; "
                "selling the full position",
            )

        shares = amount / request.current_price if request.current_price > 0 else 0.0
        return SizingResult(
            action=TradeDirection.SELL,
            dollar_amount=amount,
            shares=round(shares, 6),
            percent_of_portfolio=amount / request.total_value * 100,
            reasoning=reason,
        )

    def _size_hold(self, request: SizingRequest) -> SizingResult:
        policy = request.policy
        value = request.position_value
        min_dollars = policy.min_position_dollars(request.total_value)

        if request.position is None or value <= 0 or value >= min_dollars:
            return self._hold(request, "No position adjustment needed")

        if request.has_pending_sell:
            return self._hold(request, "Undersized position already has a pending SELL order")

        # Undersized position: keep it while its shortfall is within the stop-loss band
        actual_loss = min_dollars - value
        max_expected_loss = min_dollars * policy.stop_loss_percent / 100
        if actual_loss <= max_expected_loss:
            return self._hold(
                request,
                f"Position ${value:,.2f} is below the ${min_dollars:,.2f} minimum but within the "
                f"{policy.stop_loss_percent:.0f}% stop-loss band",
            )

        return self._full_sell(
            request,
            f"Position ${value:,.2f} is below the ${min_dollars:,.2f} minimum and its loss exceeds the "
            f"{policy.stop_loss_percent:.0f}% stop-loss band; closing it",
        )

    def _full_sell(self, request: SizingRequest, reason: str) -> SizingResult:
        position = request.position
        value = request.position_value
        return SizingResult(
            action=TradeDirection.SELL,
            dollar_amount=value,
            shares=position.qty if position else 0.0,
            percent_of_portfolio=value / request.total_value * 100 if request.total_value > 0 else 0.0,
            close_position=True,
            reasoning=reason,
        )

    @staticmethod
    def _hold(request: SizingRequest, reason: str) -> SizingResult:
        return SizingResult(action=TradeDirection.HOLD, reasoning=reason)
