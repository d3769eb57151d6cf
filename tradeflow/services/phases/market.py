"""Market phase: latest price and a short market read."""

from __future__ import annotations

from typing import Optional

import structlog

from ...core.errors import TradeflowError
from ...schemas.insights import MarketInsight
from ..task_queue import PhaseTask
from .base import BasePhase

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a market analyst. In under 150 words, summarize the current price action, "
    "trend and notable technical levels for the given stock."
)


class MarketPhase(BasePhase):
    name = "market"
    title = "Market analysis"

    async def execute(self, task: PhaseTask) -> None:
        price: Optional[float] = None
        try:
            broker = await self.broker(task)
            price = await broker.get_latest_price(task.ticker)
        except TradeflowError as e:
            # Price is re-resolved at the portfolio phase
            logger.warning("Latest price unavailable", ticker=task.ticker, error=e.message)
            await self.store.append_message(
                task.analysis_id,
                agent=self.name,
                message=f"Latest price for {task.ticker} unavailable: {e.message}",
                type="warning",
            )

        price_line = f"Latest price: ${price:,.2f}" if price else "Latest price: unavailable"
        summary = await self.complete(
            task,
            f"Stock: {task.ticker}\n{price_line}\nProvide the market summary.",
            SYSTEM_PROMPT,
        )

        await self.store.update_insight(
            task.analysis_id,
            self.name,
            MarketInsight(summary=summary.strip(), current_price=price),
        )
        await self.store.append_message(
            task.analysis_id, agent=self.name, message=summary.strip() or price_line, type="analysis"
        )
