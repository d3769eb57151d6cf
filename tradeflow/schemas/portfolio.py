"""Brokerage portfolio snapshot."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccountSnapshot(BaseModel):
    """Account balances.

    ``cash`` is already net of capital reserved by open BUY orders;
    ``original_cash`` is what the brokerage reported.
    """

    model_config = ConfigDict(frozen=True)

    cash: float
    original_cash: float
    portfolio_value: float
    buying_power: float = 0.0
    reserved_capital: float = 0.0
    equity: float = 0.0
    long_market_value: float = 0.0


class PositionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    qty: float
    avg_entry_price: float = 0.0
    current_price: float = 0.0
    market_value: float = 0.0
    unrealized_pl: float = 0.0
    unrealized_pl_percent: float = Field(0.0, description="Unrealized P/L in percent units")


class OpenOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    side: str  # buy | sell
    qty: float = 0.0
    notional: float = 0.0
    limit_price: Optional[float] = None
    order_type: str = "market"
    status: str = "new"
    submitted_at: Optional[datetime] = None
    reserved_capital: float = 0.0


class PortfolioSnapshot(BaseModel):
    """Account, positions and open orders fetched fresh for one decision."""

    model_config = ConfigDict(frozen=True)

    account: AccountSnapshot
    positions: List[PositionSnapshot] = Field(default_factory=list)
    open_orders: List[OpenOrder] = Field(default_factory=list)

    def position_for(self, symbol: str) -> Optional[PositionSnapshot]:
        symbol = symbol.upper()
        for position in self.positions:
            if position.symbol.upper() == symbol:
                return position
        return None

    def open_orders_for(self, symbol: str) -> List[OpenOrder]:
        symbol = symbol.upper()
        return [order for order in self.open_orders if order.symbol.upper() == symbol]
