"""Pydantic schemas for the decision pipeline."""

from .decision import (
    Decision,
    Intent,
    IntentResolution,
    ParsedDecision,
    PositionLeg,
    Recommendation,
    SizingResult,
    TradeDirection,
    TradeOrder,
)
from .insights import (
    AuditMessage,
    ExecutionInsight,
    MarketInsight,
    OrderSummary,
    PhaseInsight,
    PortfolioInsight,
    ResearchInsight,
    RiskInsight,
    parse_insight,
    parse_insights,
)
from .policy import RiskLevel, UserPolicy
from .portfolio import AccountSnapshot, OpenOrder, PortfolioSnapshot, PositionSnapshot
from .trigger import AnalysisTrigger, ApiSettings, RetryRequest, TriggerResponse

__all__ = [
    "AccountSnapshot",
    "AnalysisTrigger",
    "ApiSettings",
    "AuditMessage",
    "Decision",
    "ExecutionInsight",
    "Intent",
    "IntentResolution",
    "MarketInsight",
    "OpenOrder",
    "OrderSummary",
    "ParsedDecision",
    "PhaseInsight",
    "PortfolioInsight",
    "PortfolioSnapshot",
    "PositionLeg",
    "PositionSnapshot",
    "Recommendation",
    "ResearchInsight",
    "RetryRequest",
    "RiskInsight",
    "RiskLevel",
    "SizingResult",
    "TradeDirection",
    "TradeOrder",
    "TriggerResponse",
    "UserPolicy",
    "parse_insight",
    "parse_insights",
]
