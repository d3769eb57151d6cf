"""Stored per-user trading configuration and rebalance requests."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class UserSettings(SQLModel, table=True):
    """Brokerage credentials, AI provider and portfolio policy for a user."""

    __tablename__ = "user_settings"

    user_id: str = Field(primary_key=True, max_length=64)

    # Brokerage
    alpaca_paper_api_key: Optional[str] = Field(default=None)
    alpaca_paper_secret_key: Optional[str] = Field(default=None)
    alpaca_live_api_key: Optional[str] = Field(default=None)
    alpaca_live_secret_key: Optional[str] = Field(default=None)
    alpaca_paper_trading: bool = Field(default=True)

    # AI provider
    ai_provider: Optional[str] = Field(default=None, max_length=32)
    ai_api_key: Optional[str] = Field(default=None)
    ai_model: Optional[str] = Field(default=None, max_length=64)

    # Policy (percent values)
    user_risk_level: str = Field(default="moderate", max_length=20)
    rebalance_min_position_size: Optional[float] = Field(default=None)
    rebalance_max_position_size: Optional[float] = Field(default=None)
    target_cash_allocation: Optional[float] = Field(default=None)
    profit_target: Optional[float] = Field(default=None)
    stop_loss: Optional[float] = Field(default=None)
    near_limit_threshold: Optional[float] = Field(default=None)
    near_position_threshold: Optional[float] = Field(default=None)
    default_position_size_dollars: Optional[float] = Field(default=None)

    # Automation flags
    auto_near_limit_analysis: bool = Field(default=False, index=True)
    auto_execute_trades: bool = Field(default=False)

    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def has_alpaca_credentials(self) -> bool:
        has_paper = bool(self.alpaca_paper_api_key and self.alpaca_paper_secret_key)
        has_live = bool(self.alpaca_live_api_key and self.alpaca_live_secret_key)
        return has_paper or has_live


class RebalanceRequest(SQLModel, table=True):
    """Portfolio rebalance run; only its status matters to the scanner."""

    __tablename__ = "rebalance_requests"

    id: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(max_length=64, index=True)
    status: str = Field(default="pending", max_length=20, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
