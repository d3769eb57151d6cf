"""Portfolio decision: recommendation + live portfolio state -> bounded trade order."""

from __future__ import annotations

from typing import Awaitable, Callable, List, Optional

import structlog

from ..config import get_settings
from ..schemas.decision import (
    Decision,
    Intent,
    IntentResolution,
    Recommendation,
    SizingResult,
    TradeDirection,
)
from ..schemas.policy import UserPolicy
from ..schemas.portfolio import PortfolioSnapshot, PositionSnapshot
from .ai_client import AICompletionClient
from .cash_constraints import calculate_deployable_cash
from .decision_parser import format_decision_line, parse_decision_line
from .intent import has_open_position, resolve_intent
from .position_sizing import PositionSizer, SizingRequest, adjust_confidence_for_risk_level
from .trade_order_builder import build_trade_order

logger = structlog.get_logger(__name__)

Checkpoint = Callable[[], Awaitable[None]]

PORTFOLIO_MANAGER_SYSTEM_PROMPT = (
    "You are a portfolio manager. Reply with exactly one line in one of these forms and nothing else: "
    "'BUY $<amount> worth <TICKER>', 'SELL $<amount> worth <TICKER>' or 'HOLD <TICKER>'."
)


def position_size_status(value: float, policy: UserPolicy, total_value: float) -> str:
    """Label a holding against the policy bounds: MAX SIZE, NEAR MAX, MIN SIZE, NEAR MIN or empty.

    "Near" means within ``near_position_threshold_percent`` of the bound.
    """
    max_dollars = policy.max_position_dollars(total_value)
    min_dollars = policy.min_position_dollars(total_value)
    buffer = policy.near_position_threshold_percent / 100
    if max_dollars > 0 and value >= max_dollars:
        return "MAX SIZE"
    if max_dollars > 0 and value >= max_dollars * (1 - buffer):
        return "NEAR MAX"
    if min_dollars > 0 and value <= min_dollars:
        return "MIN SIZE"
    if min_dollars > 0 and value <= min_dollars * (1 + buffer):
        return "NEAR MIN"
    return ""


class DecisionEngine:
    """Composes intent resolution, cash limits, sizing and the optional AI consult."""

    def __init__(
        self,
        sizer: Optional[PositionSizer] = None,
        ai_client: Optional[AICompletionClient] = None,
        *,
        confidence_risk_adjustment: Optional[bool] = None,
        max_tokens: Optional[int] = None,
    ):
        self.sizer = sizer or PositionSizer()
        self.ai_client = ai_client
        if confidence_risk_adjustment is None:
            confidence_risk_adjustment = get_settings().confidence_risk_adjustment_enabled
        self.confidence_risk_adjustment = confidence_risk_adjustment
        self.max_tokens = max_tokens

    async def decide(
        self,
        *,
        analysis_id: str,
        ticker: str,
        recommendation: Recommendation,
        snapshot: PortfolioSnapshot,
        policy: UserPolicy,
        current_price: float,
        before_ai_request: Optional[Checkpoint] = None,
    ) -> Decision:
        """Produce the final decision for one analysis.

        Args:
            analysis_id: Analysis the order belongs to
            ticker: Upper-case symbol
            recommendation: Risk-manager verdict and confidence
            snapshot: Portfolio fetched fresh for this decision
            policy: User policy built for this decision
            current_price: Price used for share math
            before_ai_request: Awaited before the AI consult (cancellation checkpoint)

        Returns:
            Decision with resolution, sizing, order (None for HOLD) and decision line
        """
        position = snapshot.position_for(ticker)
        has_position = has_open_position(
            position.qty if position else None,
            position.market_value if position else None,
        )
        if not has_position:
            position = None
        pending_orders = snapshot.open_orders_for(ticker)

        resolution = resolve_intent(recommendation.decision, has_position, pending_orders, ticker)
        messages: List[str] = list(resolution.warnings)

        confidence = recommendation.confidence
        if self.confidence_risk_adjustment:
            adjusted = adjust_confidence_for_risk_level(confidence, policy.risk_level)
            if adjusted != confidence:
                messages.append(
                    f"Confidence adjusted from {confidence:.0f}% to {adjusted:.0f}% "
                    f"for {policy.risk_level.value} risk profile"
                )
            confidence = adjusted

        total_value = snapshot.account.portfolio_value
        available_cash = snapshot.account.cash
        deployable_cash = calculate_deployable_cash(
            available_cash, total_value, policy.target_cash_allocation_percent
        )
        has_pending_sell = any(order.side.lower() == "sell" for order in pending_orders)

        def size(resolved: IntentResolution, requested_amount: Optional[float] = None) -> SizingResult:
            return self.sizer.size(
                SizingRequest(
                    ticker=ticker,
                    intent=resolved.intent,
                    direction=resolved.direction,
                    confidence=confidence,
                    policy=policy,
                    total_value=total_value,
                    deployable_cash=deployable_cash,
                    available_cash=available_cash,
                    current_price=current_price,
                    position=position,
                    has_pending_sell=has_pending_sell,
                    requested_amount=requested_amount,
                )
            )

        sizing = size(resolution)

        if self.ai_client is not None:
            if before_ai_request is not None:
                await before_ai_request()
            resolution, sizing, ai_messages = await self._consult_portfolio_manager(
                ticker=ticker,
                recommendation=recommendation,
                confidence=confidence,
                position=position,
                has_position=has_position,
                pending_orders=pending_orders,
                deployable_cash=deployable_cash,
                suggested=sizing,
                resolution=resolution,
                total_value=total_value,
                policy=policy,
                size=size,
            )
            messages.extend(ai_messages)

        if resolution.direction != TradeDirection.HOLD and sizing.action == TradeDirection.HOLD:
            messages.append(f"{resolution.intent.value} demoted to HOLD: {sizing.reasoning}")
        elif resolution.direction == TradeDirection.HOLD and sizing.action == TradeDirection.SELL:
            messages.append(f"HOLD converted to full SELL: {sizing.reasoning}")

        final_intent = resolution.intent
        if sizing.action == TradeDirection.SELL and final_intent == Intent.HOLD:
            final_intent = Intent.EXIT

        order = None
        if sizing.action != TradeDirection.HOLD:
            order = build_trade_order(
                ticker=ticker,
                analysis_id=analysis_id,
                intent=final_intent,
                sizing=sizing,
                confidence=confidence,
                current_price=current_price,
                total_value=total_value,
                position=position,
            )

        decision_line = format_decision_line(sizing.action, ticker, sizing.dollar_amount)
        logger.info(
            "Portfolio decision made",
            analysis_id=analysis_id,
            ticker=ticker,
            original_decision=recommendation.decision,
            intent=final_intent.value,
            decision_line=decision_line,
            deployable_cash=round(deployable_cash, 2),
        )

        return Decision(
            ticker=ticker,
            original_decision=recommendation.decision,
            confidence=confidence,
            resolution=resolution,
            sizing=sizing,
            order=order,
            decision_line=decision_line,
            deployable_cash=deployable_cash,
            messages=messages,
        )

    async def _consult_portfolio_manager(
        self,
        *,
        ticker: str,
        recommendation: Recommendation,
        confidence: float,
        position: Optional[PositionSnapshot],
        has_position: bool,
        pending_orders,
        deployable_cash: float,
        suggested: SizingResult,
        resolution: IntentResolution,
        total_value: float,
        policy: UserPolicy,
        size: Callable[..., SizingResult],
    ):
        """Ask the portfolio-manager model and re-apply every deterministic guard to its answer."""
        prompt = self._build_prompt(
            ticker=ticker,
            recommendation=recommendation,
            confidence=confidence,
            position=position,
            deployable_cash=deployable_cash,
            total_value=total_value,
            suggested=suggested,
            policy=policy,
        )
        text = await self.ai_client.complete(
            prompt,
            system_prompt=PORTFOLIO_MANAGER_SYSTEM_PROMPT,
            max_tokens=self.max_tokens,
        )

        messages: List[str] = []
        parsed = parse_decision_line(text)
        if parsed is None or parsed.ticker.upper() != ticker:
            logger.warning(
                "Unparsable portfolio manager output, holding",
                ticker=ticker,
                output=text[:200],
            )
            messages.append("Portfolio manager output could not be parsed; defaulting to HOLD")
            hold = resolve_intent("HOLD", has_position, pending_orders, ticker)
            return hold, size(hold), messages

        ai_resolution = resolve_intent(parsed.action.value, has_position, pending_orders, ticker)
        messages.extend(w for w in ai_resolution.warnings if w not in resolution.warnings)

        if ai_resolution.direction == TradeDirection.HOLD:
            return ai_resolution, size(ai_resolution), messages

        sizing = size(ai_resolution, requested_amount=parsed.dollar_amount)
        if abs(sizing.dollar_amount - parsed.dollar_amount) >= 0.01 and sizing.action != TradeDirection.HOLD:
            messages.append(
                f"Portfolio manager amount ${parsed.dollar_amount:,.0f} adjusted to "
                f"${sizing.dollar_amount:,.0f} by position limits"
            )
        return ai_resolution, sizing, messages

    @staticmethod
    def _build_prompt(
        *,
        ticker: str,
        recommendation: Recommendation,
        confidence: float,
        position: Optional[PositionSnapshot],
        deployable_cash: float,
        total_value: float,
        suggested: SizingResult,
        policy: UserPolicy,
    ) -> str:
        if position is not None:
            holding = (
                f"{position.qty:g} shares worth ${position.market_value:,.2f} "
                f"({position.unrealized_pl_percent:+.1f}% unrealized P/L)"
            )
            status = position_size_status(position.market_value, policy, total_value)
            if status:
                holding = f"{holding} [{status}]"
        else:
            holding = "no position"

        suggestion = format_decision_line(suggested.action, ticker, suggested.dollar_amount)
        return (
            f"Ticker: {ticker}\n"
            f"Risk manager recommendation: {recommendation.decision} ({confidence:.0f}% confidence)\n"
            f"Current holding: {holding}\n"
            f"Portfolio value: ${total_value:,.2f}\n"
            f"Deployable cash: ${deployable_cash:,.2f}\n"
            f"Sizing model suggestion: {suggestion}\n"
            "Give your final decision line."
        )
