"""Typed decision values: intents, sizing results and trade orders."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Intent(str, Enum):
    """Normalized directional decision, independent of sizing."""

    BUILD = "BUILD"
    ADD = "ADD"
    TRIM = "TRIM"
    EXIT = "EXIT"
    HOLD = "HOLD"

    @property
    def direction(self) -> "TradeDirection":
        if self in (Intent.BUILD, Intent.ADD):
            return TradeDirection.BUY
        if self in (Intent.TRIM, Intent.EXIT):
            return TradeDirection.SELL
        return TradeDirection.HOLD


class TradeDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class IntentResolution(BaseModel):
    """Outcome of intent normalization, with audit annotations."""

    model_config = ConfigDict(frozen=True)

    intent: Intent
    base_intent: Intent
    direction: TradeDirection
    warnings: List[str] = Field(default_factory=list)
    pending_order_override: bool = False


class Recommendation(BaseModel):
    """Risk-manager verdict handed to the portfolio decision."""

    model_config = ConfigDict(frozen=True)

    decision: str
    confidence: float = Field(50.0, ge=0, le=100)


class ParsedDecision(BaseModel):
    """A decision line parsed off the AI wire format."""

    model_config = ConfigDict(frozen=True)

    action: TradeDirection
    ticker: str
    dollar_amount: float = 0.0


class SizingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: TradeDirection
    dollar_amount: float = 0.0
    shares: float = 0.0
    percent_of_portfolio: float = 0.0
    close_position: bool = False
    reasoning: str = ""


class PositionLeg(BaseModel):
    """Shares, value and allocation (percent of portfolio) at one point in time."""

    model_config = ConfigDict(frozen=True)

    shares: float = 0.0
    value: float = 0.0
    allocation: float = 0.0


class TradeOrder(BaseModel):
    """Ready-to-submit order descriptor; immutable once built."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    analysis_id: str
    action: TradeDirection
    intent: Intent
    dollar_amount: float = 0.0
    shares: float = 0.0
    confidence: float = 0.0
    close_position: bool = False
    before: PositionLeg = Field(default_factory=PositionLeg)
    after: PositionLeg = Field(default_factory=PositionLeg)
    changes: PositionLeg = Field(default_factory=PositionLeg)
    reasoning: str = ""


class Decision(BaseModel):
    """Final result of the decision engine for one analysis."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    original_decision: str
    confidence: float
    resolution: IntentResolution
    sizing: SizingResult
    order: Optional[TradeOrder] = None
    decision_line: str
    deployable_cash: float
    messages: List[str] = Field(default_factory=list)

    @property
    def action(self) -> TradeDirection:
        return self.sizing.action

    @property
    def final_intent(self) -> Intent:
        return self.order.intent if self.order else Intent.HOLD
