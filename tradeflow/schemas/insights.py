"""Versioned per-phase insight payloads stored on the analysis record.

Each phase owns one key of ``AnalysisRecord.agent_insights_json``; payloads
are a discriminated union on ``kind`` and are validated when read back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .decision import PositionLeg


class _Insight(BaseModel):
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)


class MarketInsight(_Insight):
    kind: Literal["market"] = "market"
    summary: str = ""
    current_price: Optional[float] = None


class ResearchInsight(_Insight):
    kind: Literal["research"] = "research"
    summary: str = ""


class RiskInsight(_Insight):
    kind: Literal["risk"] = "risk"
    decision: str
    confidence: float
    assessment: str = ""
    current_price: Optional[float] = None


class OrderSummary(BaseModel):
    action: str
    dollar_amount: float = 0.0
    shares: float = 0.0
    before: Optional[PositionLeg] = None
    after: Optional[PositionLeg] = None
    changes: Optional[PositionLeg] = None
    reasoning: str = ""


class PortfolioInsight(_Insight):
    kind: Literal["portfolio"] = "portfolio"
    intent: str
    trade_direction: str
    original_decision: str
    decision_line: str
    confidence: float = 0.0
    deployable_cash: float = 0.0
    order: Optional[OrderSummary] = None
    warnings: List[str] = Field(default_factory=list)
    existing_order_used: bool = False
    order_recorded: bool = False


class ExecutionInsight(_Insight):
    kind: Literal["execution"] = "execution"
    order_status: str
    auto_executed: bool = False
    broker_order_id: Optional[str] = None
    message: str = ""


PhaseInsight = Annotated[
    Union[MarketInsight, ResearchInsight, RiskInsight, PortfolioInsight, ExecutionInsight],
    Field(discriminator="kind"),
]

_insight_adapter: TypeAdapter[Any] = TypeAdapter(PhaseInsight)


def parse_insight(payload: Dict[str, Any]) -> PhaseInsight:
    """Validate a stored payload into its tagged insight type."""
    return _insight_adapter.validate_python(payload)


def parse_insights(raw: Dict[str, Any]) -> Dict[str, PhaseInsight]:
    """Validate every insight in a stored insight map."""
    return {key: parse_insight(value) for key, value in raw.items()}


class AuditMessage(BaseModel):
    agent: str
    message: str
    type: str = "info"  # info | warning | error | decision | analysis
    timestamp: datetime = Field(default_factory=datetime.utcnow)
