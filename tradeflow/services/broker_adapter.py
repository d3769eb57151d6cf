"""Broker adapter interface, portfolio snapshot assembly and a simulated broker."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import structlog

from ..core.errors import (
    DuplicateOrderError,
    ExternalServiceError,
    InsufficientFundsError,
    ResourceNotFoundError,
    TradeflowError,
    ValidationError,
)
from ..schemas.portfolio import AccountSnapshot, OpenOrder, PortfolioSnapshot, PositionSnapshot

logger = structlog.get_logger(__name__)

# Buffer applied to market BUY orders priced off the position's current price
MARKET_ORDER_RESERVE_BUFFER = 1.02


class OrderStatus(str, Enum):
    """Order status enumeration."""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    PARTIAL = "PARTIAL"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class OrderType(str, Enum):
    """Order type enumeration."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderAction(str, Enum):
    """Order action enumeration."""

    BUY = "BUY"
    SELL = "SELL"


@dataclass
class OrderRequest:
    """Order request data structure.

    Exactly one of ``quantity`` and ``notional`` is set: BUY orders go out
    as dollar notional, closing SELLs as the full share quantity.
    """

    symbol: str
    action: OrderAction
    quantity: Optional[float] = None
    notional: Optional[float] = None
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[float] = None
    time_in_force: str = "DAY"

    # Broker-side idempotency key (the analysis id)
    client_order_id: Optional[str] = None
    decision_rationale: Optional[str] = None


@dataclass
class OrderResponse:
    """Order response data structure."""

    order_id: str
    status: OrderStatus
    symbol: str
    action: OrderAction
    quantity: float
    filled_quantity: float
    average_fill_price: Optional[float]
    notional: Optional[float] = None
    message: Optional[str] = None
    submitted_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def reserved_capital_for(order: Dict[str, Any], position_prices: Dict[str, float]) -> float:
    """Cash held back by one open order.

    Only BUY orders reserve capital: the notional when present, else
    qty x limit price, else (market orders) qty x the position's current
    price with a 2% buffer.
    """
    if str(order.get("side", "")).lower() != "buy":
        return 0.0

    notional = _to_float(order.get("notional"))
    if notional > 0:
        return notional

    qty = _to_float(order.get("qty"))
    limit_price = _to_float(order.get("limit_price"))
    if qty > 0 and limit_price > 0:
        return qty * limit_price

    if qty > 0 and str(order.get("type", order.get("order_type", ""))).lower() == "market":
        price = position_prices.get(str(order.get("symbol", "")).upper(), 0.0)
        return qty * price * MARKET_ORDER_RESERVE_BUFFER

    return 0.0


def assemble_snapshot(
    account: Dict[str, Any],
    positions: Iterable[Dict[str, Any]],
    open_orders: Iterable[Dict[str, Any]],
) -> PortfolioSnapshot:
    """Build a snapshot from raw brokerage payloads.

    ``positions[].unrealized_plpc`` is a fraction; the snapshot carries
    percent units. Cash is reported net of capital reserved by open BUYs.
    """
    position_models: List[PositionSnapshot] = []
    for raw in positions:
        current_price = _to_float(raw.get("current_price")) or _to_float(raw.get("lastday_price"))
        position_models.append(
            PositionSnapshot(
                symbol=str(raw["symbol"]).upper(),
                qty=_to_float(raw.get("qty")),
                avg_entry_price=_to_float(raw.get("avg_entry_price")),
                current_price=current_price,
                market_value=_to_float(raw.get("market_value")),
                unrealized_pl=_to_float(raw.get("unrealized_pl")),
                unrealized_pl_percent=_to_float(raw.get("unrealized_plpc")) * 100,
            )
        )
    position_prices = {p.symbol: p.current_price for p in position_models}

    reserved_total = 0.0
    order_models: List[OpenOrder] = []
    for raw in open_orders:
        reserved = reserved_capital_for(raw, position_prices)
        reserved_total += reserved
        limit_price = _to_float(raw.get("limit_price"))
        order_models.append(
            OpenOrder(
                symbol=str(raw.get("symbol", "")).upper(),
                side=str(raw.get("side", "")).lower(),
                qty=_to_float(raw.get("qty")),
                notional=_to_float(raw.get("notional")),
                limit_price=limit_price or None,
                order_type=str(raw.get("type", raw.get("order_type", "market"))).lower(),
                status=str(raw.get("status", "new")).lower(),
                submitted_at=raw.get("submitted_at"),
                reserved_capital=reserved,
            )
        )

    original_cash = _to_float(account.get("cash"))
    adjusted_cash = max(0.0, original_cash - reserved_total)

    logger.info(
        "Portfolio snapshot assembled",
        positions=len(position_models),
        open_orders=len(order_models),
        reserved_capital=round(reserved_total, 2),
        cash=round(adjusted_cash, 2),
        original_cash=round(original_cash, 2),
    )

    return PortfolioSnapshot(
        account=AccountSnapshot(
            cash=adjusted_cash,
            original_cash=original_cash,
            portfolio_value=_to_float(account.get("portfolio_value")),
            buying_power=_to_float(account.get("buying_power")),
            reserved_capital=reserved_total,
            equity=_to_float(account.get("equity")),
            long_market_value=_to_float(account.get("long_market_value")),
        ),
        positions=position_models,
        open_orders=order_models,
    )


class BrokerAdapter(ABC):
    """Abstract base class for broker adapters."""

    @abstractmethod
    async def fetch_portfolio(self) -> PortfolioSnapshot:
        """Fetch account, positions and open orders.

        Raises:
            ExternalServiceError: If the account or positions cannot be fetched.
                An open-orders failure degrades to an empty list.
        """

    @abstractmethod
    async def submit_order(self, order: OrderRequest) -> OrderResponse:
        """Submit an order to the broker.

        Raises:
            DuplicateOrderError: If an order with the same ``client_order_id``
                was already accepted
        """

    @abstractmethod
    async def get_order_by_client_id(self, client_order_id: str) -> Optional[OrderResponse]:
        """Look up a previously submitted order, or None if the broker never saw it."""

    @abstractmethod
    async def get_latest_price(self, symbol: str) -> float:
        """Get the latest trade/quote price for a symbol."""


class SimulatedBroker(BrokerAdapter):
    """In-memory broker for development and tests."""

    def __init__(
        self,
        initial_cash: float = 100000.0,
        prices: Optional[Dict[str, float]] = None,
    ):
        self.cash = initial_cash
        self.prices: Dict[str, float] = {k.upper(): v for k, v in (prices or {}).items()}
        self.positions: Dict[str, Dict[str, float]] = {}
        self.open_orders: List[Dict[str, Any]] = []
        self.orders: Dict[str, OrderResponse] = {}
        self.orders_by_client_id: Dict[str, OrderResponse] = {}
        self.order_counter = 0

        logger.info("Initialized SimulatedBroker", initial_cash=initial_cash)

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol.upper()] = price

    def add_position(self, symbol: str, qty: float, avg_entry_price: float) -> None:
        self.positions[symbol.upper()] = {"qty": qty, "avg_entry_price": avg_entry_price}

    def add_open_order(self, symbol: str, side: str, **fields: Any) -> None:
        self.open_orders.append({"symbol": symbol.upper(), "side": side, "status": "new", **fields})

    def _position_payload(self, symbol: str, holding: Dict[str, float]) -> Dict[str, Any]:
        price = self.prices.get(symbol, holding["avg_entry_price"])
        qty = holding["qty"]
        cost = qty * holding["avg_entry_price"]
        market_value = qty * price
        return {
            "symbol": symbol,
            "qty": qty,
            "avg_entry_price": holding["avg_entry_price"],
            "current_price": price,
            "market_value": market_value,
            "unrealized_pl": market_value - cost,
            "unrealized_plpc": (market_value - cost) / cost if cost else 0.0,
        }

    async def fetch_portfolio(self) -> PortfolioSnapshot:
        positions = [self._position_payload(s, h) for s, h in self.positions.items() if h["qty"] > 0]
        long_value = sum(p["market_value"] for p in positions)
        account = {
            "cash": self.cash,
            "portfolio_value": self.cash + long_value,
            "buying_power": self.cash,
            "equity": self.cash + long_value,
            "long_market_value": long_value,
        }
        return assemble_snapshot(account, positions, self.open_orders)

    async def get_latest_price(self, symbol: str) -> float:
        symbol = symbol.upper()
        if symbol not in self.prices:
            raise ResourceNotFoundError(f"No price for {symbol}", details={"symbol": symbol})
        return self.prices[symbol]

    async def submit_order(self, order: OrderRequest) -> OrderResponse:
        """Fill an order immediately at the latest price."""
        if order.client_order_id and order.client_order_id in self.orders_by_client_id:
            raise DuplicateOrderError(
                f"client_order_id {order.client_order_id} must be unique",
                details={"client_order_id": order.client_order_id},
            )
        self.order_counter += 1
        order_id = f"SIM{self.order_counter:06d}"
        symbol = order.symbol.upper()

        try:
            price = await self.get_latest_price(symbol)
            if order.quantity is None and not order.notional:
                raise ValidationError(
                    "Order needs a quantity or a notional amount",
                    details={"symbol": symbol},
                )
            quantity = order.quantity if order.quantity is not None else order.notional / price
            trade_value = quantity * price

            holding = self.positions.setdefault(symbol, {"qty": 0.0, "avg_entry_price": price})
            if order.action == OrderAction.BUY:
                if trade_value > self.cash:
                    raise InsufficientFundsError(
                        f"Insufficient cash to execute order {order_id}.",
                        details={
                            "symbol": symbol,
                            "required": round(trade_value, 2),
                            "available": round(self.cash, 2),
                        },
                    )
                total_cost = holding["qty"] * holding["avg_entry_price"] + trade_value
                holding["qty"] += quantity
                holding["avg_entry_price"] = total_cost / holding["qty"]
                self.cash -= trade_value
            else:
                quantity = min(quantity, holding["qty"])
                trade_value = quantity * price
                holding["qty"] -= quantity
                self.cash += trade_value
        except TradeflowError:
            raise
        except Exception as e:  # pragma: no cover
            logger.error("Simulated order failed", order_id=order_id, error=str(e), exc_info=True)
            raise ExternalServiceError(
                f"Broker failed to submit order {order_id}",
                details={"symbol": symbol, "action": order.action.value},
            ) from e

        now = datetime.utcnow()
        response = OrderResponse(
            order_id=order_id,
            status=OrderStatus.FILLED,
            symbol=symbol,
            action=order.action,
            quantity=quantity,
            filled_quantity=quantity,
            average_fill_price=price,
            notional=order.notional,
            message="Simulated execution",
            submitted_at=now,
            filled_at=now,
        )
        self.orders[order_id] = response
        if order.client_order_id:
            self.orders_by_client_id[order.client_order_id] = response
        logger.info(
            "Simulated order filled",
            order_id=order_id,
            symbol=symbol,
            action=order.action.value,
            quantity=round(quantity, 6),
            price=price,
        )
        return response

    async def get_order_by_client_id(self, client_order_id: str) -> Optional[OrderResponse]:
        return self.orders_by_client_id.get(client_order_id)
