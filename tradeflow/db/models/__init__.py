"""Database models for the tradeflow engine."""

from __future__ import annotations

from .analysis_record import AnalysisRecord, WorkflowStep
from .trade_action import TradeAction
from .user_settings import RebalanceRequest, UserSettings

__all__ = [
    "AnalysisRecord",
    "RebalanceRequest",
    "TradeAction",
    "UserSettings",
    "WorkflowStep",
]
