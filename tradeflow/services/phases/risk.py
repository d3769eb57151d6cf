"""Risk phase: risk-manager verdict and confidence."""

from __future__ import annotations

import json

from ...schemas.insights import MarketInsight, ResearchInsight, RiskInsight
from ..decision_parser import parse_risk_verdict
from ..task_queue import PhaseTask
from .base import BasePhase

SYSTEM_PROMPT = (
    "You are a risk manager. Assess the risk of acting on the research and end your answer with "
    "two lines: 'DECISION: BUY|SELL|HOLD' and 'CONFIDENCE: <0-100>'."
)


class RiskPhase(BasePhase):
    name = "risk"
    title = "Risk assessment"

    async def execute(self, task: PhaseTask) -> None:
        insights = await self.store.read_insights(task.analysis_id)
        market = insights.get("market")
        research = insights.get("research")
        context = (await self.store.read_context(task.analysis_id)).get("analysis_context") or {}

        lines = [f"Stock: {task.ticker}"]
        if isinstance(market, MarketInsight):
            lines.append(f"Market summary: {market.summary}")
        if isinstance(research, ResearchInsight):
            lines.append(f"Research synthesis: {research.summary}")
        if context.get("near_limit_analysis"):
            lines.append(f"Position proximity: {json.dumps(context, default=str)}")
        lines.append("Provide the risk assessment.")

        assessment = await self.complete(task, "\n".join(lines), SYSTEM_PROMPT)
        verdict = parse_risk_verdict(assessment)

        await self.store.update_insight(
            task.analysis_id,
            self.name,
            RiskInsight(
                decision=verdict.decision,
                confidence=verdict.confidence,
                assessment=assessment.strip(),
                current_price=market.current_price if isinstance(market, MarketInsight) else None,
            ),
        )
        await self.store.update_decision(task.analysis_id, verdict.decision, verdict.confidence)
        await self.store.append_message(
            task.analysis_id,
            agent=self.name,
            message=f"Risk Manager recommends {verdict.decision} ({verdict.confidence:.0f}% confidence)",
            type="decision",
        )
