"""Execution phase: submit the recorded order when auto-execution is enabled."""

from __future__ import annotations

from datetime import datetime

import structlog

from ...core.errors import DuplicateOrderError, ErrorType, PhaseExecutionError, TradeflowError
from ...db.models import TradeAction
from ...schemas.insights import ExecutionInsight
from ..broker_adapter import BrokerAdapter, OrderAction, OrderRequest, OrderResponse
from ..idempotency import SUBMITTING
from ..task_queue import PhaseTask
from .base import BasePhase

logger = structlog.get_logger(__name__)


def order_request_for(row: TradeAction) -> OrderRequest:
    """Closing SELLs go out by share quantity, everything else by notional."""
    action = OrderAction(row.action)
    if action == OrderAction.SELL and row.close_position:
        return OrderRequest(
            symbol=row.ticker,
            action=action,
            quantity=row.shares,
            client_order_id=row.analysis_id,
            decision_rationale=row.reasoning,
        )
    return OrderRequest(
        symbol=row.ticker,
        action=action,
        notional=round(row.dollar_amount, 2),
        client_order_id=row.analysis_id,
        decision_rationale=row.reasoning,
    )


class ExecutionPhase(BasePhase):
    """Submits the persisted order at most once.

    The first run to claim the row (``pending -> submitting``) submits it.
    A run that finds the row already ``submitting`` (an overlapping run, or
    a retry after a timeout cut the claimant off) reconciles by client order
    id; the broker rejects a second order with the same id.
    """

    name = "execution"
    title = "Trade execution"

    async def execute(self, task: PhaseTask) -> None:
        row = await self.deps.gate.find_existing(task.analysis_id)
        if row is None:
            await self._finish(task, ExecutionInsight(order_status="none", message="No order to execute"))
            return

        if row.broker_order_id or row.status not in ("pending", SUBMITTING):
            # Already submitted on an earlier attempt, or decided by the user
            await self._finish(
                task,
                ExecutionInsight(
                    order_status=row.status,
                    auto_executed=bool(row.broker_order_id),
                    broker_order_id=row.broker_order_id,
                    message=f"Order already {row.status}",
                ),
            )
            return

        if row.status == "pending" and not await self._auto_execute_enabled(task):
            await self._finish(
                task,
                ExecutionInsight(order_status="pending", message="Order recorded, awaiting approval"),
            )
            return

        await self.deps.guard.ensure_active(task.analysis_id, "execution:submit")
        broker = await self.broker(task)
        claimed = row.status == "pending" and await self.deps.gate.claim_for_submission(task.analysis_id)

        response = None
        if not claimed:
            response = await broker.get_order_by_client_id(row.analysis_id)
            if response is not None:
                logger.info(
                    "Order reconciled with broker",
                    analysis_id=task.analysis_id,
                    broker_order_id=response.order_id,
                )
        if response is None:
            response = await self._submit(broker, row, task)

        await self.deps.gate.update_order(
            task.analysis_id,
            status="executed",
            broker_order_id=response.order_id,
            executed_at=datetime.utcnow(),
        )
        logger.info(
            "Order submitted",
            analysis_id=task.analysis_id,
            ticker=row.ticker,
            action=row.action,
            broker_order_id=response.order_id,
            order_status=response.status.value,
            reconciled=not claimed,
        )
        await self._finish(
            task,
            ExecutionInsight(
                order_status="executed",
                auto_executed=True,
                broker_order_id=response.order_id,
                message=f"{row.action} {row.ticker} submitted ({response.status.value})",
            ),
        )

    async def _submit(self, broker: BrokerAdapter, row: TradeAction, task: PhaseTask) -> OrderResponse:
        try:
            return await broker.submit_order(order_request_for(row))
        except DuplicateOrderError:
            # Another run got the order in first
            existing = await broker.get_order_by_client_id(row.analysis_id)
            if existing is None:
                raise PhaseExecutionError(
                    f"Broker reports order {row.analysis_id} as duplicate but cannot find it",
                    error_type=ErrorType.DATA_FETCH,
                    details={"client_order_id": row.analysis_id},
                )
            return existing
        except TradeflowError as e:
            await self.deps.gate.update_order(task.analysis_id, status="failed", error_message=e.message)
            await self.store.append_message(
                task.analysis_id,
                agent=self.name,
                message=f"Order submission failed: {e.message}",
                type="error",
            )
            raise PhaseExecutionError(
                f"Order submission failed: {e.message}",
                error_type=ErrorType.DATA_FETCH,
                details=e.details,
            ) from e

    async def _auto_execute_enabled(self, task: PhaseTask) -> bool:
        if self.api_settings(task).auto_execute_trades:
            return True
        stored = await self.deps.user_settings.get(task.user_id)
        return bool(stored and stored.auto_execute_trades)

    async def _finish(self, task: PhaseTask, insight: ExecutionInsight) -> None:
        await self.store.update_insight(task.analysis_id, self.name, insight)
        await self.store.append_message(task.analysis_id, agent=self.name, message=insight.message)
