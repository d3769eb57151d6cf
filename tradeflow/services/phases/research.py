"""Research phase: bull/bear synthesis."""

from __future__ import annotations

from ...schemas.insights import MarketInsight, ResearchInsight
from ..task_queue import PhaseTask
from .base import BasePhase

SYSTEM_PROMPT = (
    "You are a research manager. Weigh the strongest bull case against the strongest bear case "
    "for the stock and conclude which side is better supported, in under 200 words."
)


class ResearchPhase(BasePhase):
    name = "research"
    title = "Research debate"

    async def execute(self, task: PhaseTask) -> None:
        insights = await self.store.read_insights(task.analysis_id)
        market = insights.get("market")
        market_summary = market.summary if isinstance(market, MarketInsight) else "n/a"

        summary = await self.complete(
            task,
            f"Stock: {task.ticker}\nMarket summary: {market_summary}\nProvide the bull/bear synthesis.",
            SYSTEM_PROMPT,
        )

        await self.store.update_insight(task.analysis_id, self.name, ResearchInsight(summary=summary.strip()))
        await self.store.append_message(task.analysis_id, agent=self.name, message=summary.strip(), type="analysis")
