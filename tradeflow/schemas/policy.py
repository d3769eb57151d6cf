"""Immutable per-decision user policy."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RiskLevel":
        """Parse a stored risk level, defaulting to moderate."""
        if not value:
            return cls.MODERATE
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.MODERATE


class UserPolicy(BaseModel):
    """Risk profile and position limits, built once per decision.

    All ``*_percent`` fields are 0-100. Dollar bounds are derived against the
    total portfolio value of the snapshot being decided on.
    """

    model_config = ConfigDict(frozen=True)

    risk_level: RiskLevel = RiskLevel.MODERATE
    min_position_percent: float = Field(5.0, ge=0, le=100)
    max_position_percent: float = Field(25.0, ge=0, le=100)
    target_cash_allocation_percent: float = Field(20.0, ge=0, le=100)
    profit_target_percent: float = Field(25.0, ge=0)
    stop_loss_percent: float = Field(10.0, ge=0)
    near_limit_threshold_percent: float = Field(20.0, ge=0, le=100)
    near_position_threshold_percent: float = Field(20.0, ge=0, le=100)
    default_position_size_dollars: float = Field(1000.0, ge=0)
    # Rounding increment for BUY/SELL amounts; None disables rounding
    position_increment_dollars: Optional[float] = Field(None, gt=0)

    def min_position_dollars(self, total_value: float) -> float:
        return self.min_position_percent / 100 * total_value

    def max_position_dollars(self, total_value: float) -> float:
        return self.max_position_percent / 100 * total_value
