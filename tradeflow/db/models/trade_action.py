"""Write-once trade order model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class TradeAction(SQLModel, table=True):
    """Persisted trade order, at most one per analysis.

    The unique ``analysis_id`` is what makes a retried portfolio phase a
    no-op instead of a second order.
    """

    __tablename__ = "trade_actions"

    id: Optional[int] = Field(default=None, primary_key=True)
    analysis_id: str = Field(max_length=64, unique=True, index=True)
    user_id: str = Field(max_length=64, index=True)
    ticker: str = Field(max_length=20, index=True)

    action: str = Field(max_length=10)  # BUY, SELL
    dollar_amount: float = Field(default=0.0)
    shares: float = Field(default=0.0)
    confidence: float = Field(default=0.0)
    close_position: bool = Field(default=False)
    reasoning: str = Field(default="")

    # before/after/changes snapshot of the order
    order_json: str = Field(default="{}")

    status: str = Field(default="pending", max_length=20, index=True)  # pending, submitting, approved, rejected, executed, failed
    broker_order_id: Optional[str] = Field(default=None, max_length=64)
    error_message: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    executed_at: Optional[datetime] = Field(default=None)
