"""Repository layer for database access."""

from .analysis_record import AnalysisRecordRepository, WorkflowStepRepository
from .base import BaseRepository
from .trade_action import TradeActionRepository
from .user_settings import RebalanceRequestRepository, UserSettingsRepository

__all__ = [
    "AnalysisRecordRepository",
    "BaseRepository",
    "RebalanceRequestRepository",
    "TradeActionRepository",
    "UserSettingsRepository",
    "WorkflowStepRepository",
]
