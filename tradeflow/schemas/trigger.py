"""Inbound trigger contract consumed by the workflow coordinator."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiSettings(BaseModel):
    """Per-request provider and brokerage settings.

    Field names are the wire names; unknown keys are kept so newer clients
    do not fail validation.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    ai_provider: str = Field(..., description="AI provider: openai | anthropic | deepseek")
    ai_api_key: str = Field(..., description="AI provider API key")
    ai_model: Optional[str] = None

    alpaca_paper_api_key: Optional[str] = None
    alpaca_paper_secret_key: Optional[str] = None
    alpaca_live_api_key: Optional[str] = None
    alpaca_live_secret_key: Optional[str] = None
    alpaca_paper_trading: bool = True

    user_risk_level: Optional[str] = None
    default_position_size_dollars: Optional[float] = None
    max_position_size: Optional[float] = Field(None, description="Max position size in percent")
    portfolio_manager_max_tokens: Optional[int] = None

    # Policy overrides (percent values)
    rebalance_min_position_size: Optional[float] = None
    target_cash_allocation: Optional[float] = None
    profit_target: Optional[float] = None
    stop_loss: Optional[float] = None
    near_limit_threshold: Optional[float] = None
    near_position_threshold: Optional[float] = None

    auto_execute_trades: bool = False


class AnalysisTrigger(BaseModel):
    """HTTP body that starts or resumes an analysis."""

    model_config = ConfigDict(populate_by_name=True)

    analysis_id: str = Field(..., alias="analysisId", min_length=1)
    ticker: str = Field(..., min_length=1, max_length=20)
    user_id: str = Field(..., alias="userId", min_length=1)
    api_settings: ApiSettings = Field(..., alias="apiSettings")
    phase: Optional[str] = None
    analysis_context: Dict[str, Any] = Field(default_factory=dict, alias="analysisContext")

    def normalized_ticker(self) -> str:
        return self.ticker.strip().upper()


class TriggerResponse(BaseModel):
    success: bool = True
    analysis_id: str
    ticker: str
    status: str
    phase: Optional[str] = None
    message_id: Optional[str] = None


class RetryRequest(BaseModel):
    api_settings: ApiSettings = Field(..., alias="apiSettings")

    model_config = ConfigDict(populate_by_name=True)
