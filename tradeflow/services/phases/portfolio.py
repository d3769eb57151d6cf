"""Portfolio phase: idempotent decision and order persistence."""

from __future__ import annotations

import json
from typing import Dict, Optional

import structlog

from ...core.errors import ErrorType, PhaseExecutionError, TradeflowError
from ...db.models import TradeAction
from ...schemas.decision import Recommendation, TradeDirection
from ...schemas.insights import MarketInsight, OrderSummary, PhaseInsight, PortfolioInsight, RiskInsight
from ..broker_adapter import BrokerAdapter
from ..decision_engine import DecisionEngine
from ..decision_parser import format_decision_line
from ..intent import has_open_position, normalise_intent
from ..task_queue import PhaseTask
from .base import BasePhase

logger = structlog.get_logger(__name__)


def _order_summary_from_row(row: TradeAction) -> OrderSummary:
    return OrderSummary(
        action=row.action,
        dollar_amount=row.dollar_amount,
        shares=row.shares,
        reasoning=row.reasoning,
    )


class PortfolioPhase(BasePhase):
    name = "portfolio"
    title = "Portfolio decision"

    async def execute(self, task: PhaseTask) -> None:
        existing = await self.deps.gate.find_existing(task.analysis_id)
        if existing is not None:
            await self._reuse_existing(task, existing)
            return

        insights = await self.store.read_insights(task.analysis_id)
        recommendation = await self._recommendation(task, insights)
        api_settings = self.api_settings(task)
        broker = await self._broker_or_fail(task)

        try:
            snapshot = await broker.fetch_portfolio()
        except TradeflowError as e:
            raise PhaseExecutionError(
                f"Failed to fetch portfolio: {e.message}",
                error_type=ErrorType.DATA_FETCH,
                details=e.details,
            ) from e

        price = await self._resolve_price(task, insights, broker)
        if price is None:
            position = snapshot.position_for(task.ticker)
            has_position = has_open_position(
                position.qty if position else None,
                position.market_value if position else None,
            )
            if normalise_intent(recommendation.decision, has_position).direction != TradeDirection.HOLD:
                raise PhaseExecutionError(
                    f"No valid price available for {task.ticker}",
                    error_type=ErrorType.DATA_FETCH,
                )
            price = 0.0

        policy = await self.deps.user_settings.read_user_policy(
            task.user_id, api_settings, snapshot.account.portfolio_value
        )
        engine = DecisionEngine(
            ai_client=self.deps.ai_client_factory(api_settings, max_tokens=api_settings.portfolio_manager_max_tokens),
            max_tokens=api_settings.portfolio_manager_max_tokens,
        )

        async def before_ai_request() -> None:
            await self.deps.guard.ensure_active(task.analysis_id, "portfolio:ai")

        decision = await engine.decide(
            analysis_id=task.analysis_id,
            ticker=task.ticker,
            recommendation=recommendation,
            snapshot=snapshot,
            policy=policy,
            current_price=price,
            before_ai_request=before_ai_request,
        )

        order_recorded = False
        existing_order_used = False
        order_summary: Optional[OrderSummary] = None
        decision_line = decision.decision_line
        if decision.order is not None:
            await self.deps.guard.ensure_active(task.analysis_id, "portfolio:persist")
            row, created = await self.deps.gate.record(decision.order, task.user_id)
            order_recorded = True
            existing_order_used = not created
            if created:
                order = decision.order
                order_summary = OrderSummary(
                    action=order.action.value,
                    dollar_amount=order.dollar_amount,
                    shares=order.shares,
                    before=order.before,
                    after=order.after,
                    changes=order.changes,
                    reasoning=order.reasoning,
                )
            else:
                order_summary = _order_summary_from_row(row)
                decision_line = format_decision_line(TradeDirection(row.action), task.ticker, row.dollar_amount)

        await self.store.update_context(task.analysis_id, "portfolio_snapshot", snapshot.model_dump(mode="json"))
        await self.store.update_context(task.analysis_id, "user_policy", policy.model_dump(mode="json"))
        await self.store.update_insight(
            task.analysis_id,
            self.name,
            PortfolioInsight(
                intent=decision.final_intent.value,
                trade_direction=decision.action.value,
                original_decision=decision.original_decision,
                decision_line=decision_line,
                confidence=decision.confidence,
                deployable_cash=decision.deployable_cash,
                order=order_summary,
                warnings=list(decision.resolution.warnings),
                existing_order_used=existing_order_used,
                order_recorded=order_recorded,
            ),
        )

        warnings = set(decision.resolution.warnings)
        for message in decision.messages:
            await self.store.append_message(
                task.analysis_id,
                agent=self.name,
                message=message,
                type="warning" if message in warnings else "info",
            )
        await self.store.append_message(task.analysis_id, agent=self.name, message=decision_line, type="decision")

    async def _reuse_existing(self, task: PhaseTask, row: TradeAction) -> None:
        """A previous run already persisted the order: report it verbatim."""
        decision_line = format_decision_line(TradeDirection(row.action), task.ticker, row.dollar_amount)
        logger.info("Reusing existing trade order", analysis_id=task.analysis_id, decision_line=decision_line)

        record = await self.store.read_analysis(task.analysis_id)
        await self.store.update_insight(
            task.analysis_id,
            self.name,
            PortfolioInsight(
                intent=self._intent_of_row(row),
                trade_direction=row.action,
                original_decision=(record.decision if record and record.decision else row.action),
                decision_line=decision_line,
                confidence=row.confidence,
                order=_order_summary_from_row(row),
                existing_order_used=True,
                order_recorded=True,
            ),
        )
        await self.store.append_message(
            task.analysis_id,
            agent=self.name,
            message=f"Existing order reused: {decision_line}",
            type="decision",
        )

    @staticmethod
    def _intent_of_row(row: TradeAction) -> str:
        try:
            return json.loads(row.order_json or "{}").get("intent") or row.action
        except ValueError:
            return row.action

    async def _recommendation(self, task: PhaseTask, insights: Dict[str, PhaseInsight]) -> Recommendation:
        risk = insights.get("risk")
        if isinstance(risk, RiskInsight):
            return Recommendation(decision=risk.decision, confidence=risk.confidence)

        record = await self.store.read_analysis(task.analysis_id)
        if record is not None and record.decision:
            return Recommendation(decision=record.decision, confidence=record.confidence or 50.0)

        raise PhaseExecutionError(
            f"No risk assessment available for analysis {task.analysis_id}",
            error_type=ErrorType.OTHER,
        )

    async def _broker_or_fail(self, task: PhaseTask) -> BrokerAdapter:
        try:
            return await self.broker(task)
        except PhaseExecutionError:
            raise
        except TradeflowError as e:
            raise PhaseExecutionError(
                f"Brokerage unavailable: {e.message}",
                error_type=ErrorType.DATA_FETCH,
            ) from e

    async def _resolve_price(
        self,
        task: PhaseTask,
        insights: Dict[str, PhaseInsight],
        broker: BrokerAdapter,
    ) -> Optional[float]:
        """Risk insight price, then market insight price, then the broker's latest price."""
        risk = insights.get("risk")
        if isinstance(risk, RiskInsight) and risk.current_price and risk.current_price > 0:
            return risk.current_price

        market = insights.get("market")
        if isinstance(market, MarketInsight) and market.current_price and market.current_price > 0:
            return market.current_price

        try:
            price = await broker.get_latest_price(task.ticker)
        except TradeflowError as e:
            logger.warning("Latest price lookup failed", ticker=task.ticker, error=e.message)
            return None
        return price if price and price > 0 else None


__all__ = ["PortfolioPhase"]
