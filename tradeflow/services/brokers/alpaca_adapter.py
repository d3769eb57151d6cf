"""Alpaca broker adapter (paper and live trading)."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

import structlog
from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockLatestQuoteRequest
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import OrderSide, QueryOrderStatus, TimeInForce
from alpaca.trading.requests import GetOrdersRequest, LimitOrderRequest, MarketOrderRequest

from ...core.errors import DuplicateOrderError, ExternalServiceError, ResourceNotFoundError, ValidationError
from ...core.resilience import RetryPolicy, execute_with_retry
from ...schemas.portfolio import PortfolioSnapshot
from ..broker_adapter import (
    BrokerAdapter,
    OrderAction,
    OrderRequest,
    OrderResponse,
    OrderStatus,
    OrderType,
    assemble_snapshot,
)

logger = structlog.get_logger(__name__)

_STATUS_MAP = {
    "new": OrderStatus.SUBMITTED,
    "accepted": OrderStatus.SUBMITTED,
    "pending_new": OrderStatus.PENDING,
    "accepted_for_bidding": OrderStatus.PENDING,
    "partially_filled": OrderStatus.PARTIAL,
    "filled": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
}

# Alpaca rejects a reused client_order_id with this message
_DUPLICATE_CLIENT_ID_MARKER = "client_order_id must be unique"


def _plain(value: Any) -> Any:
    """Unwrap SDK enums to their wire value."""
    if isinstance(value, Enum):
        return value.value
    return value


def _order_response(response: Any, action: OrderAction) -> OrderResponse:
    return OrderResponse(
        order_id=str(response.id),
        status=_STATUS_MAP.get(str(_plain(response.status)), OrderStatus.SUBMITTED),
        symbol=response.symbol,
        action=action,
        quantity=float(response.qty or 0),
        filled_quantity=float(response.filled_qty or 0),
        average_fill_price=float(response.filled_avg_price) if response.filled_avg_price else None,
        notional=float(response.notional) if response.notional else None,
        submitted_at=response.submitted_at,
        filled_at=response.filled_at,
    )


class AlpacaBrokerAdapter(BrokerAdapter):
    """Alpaca adapter built on alpaca-py.

    The SDK is synchronous; calls run in a worker thread under the shared
    retry policy.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        paper_trading: bool = True,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.paper_trading = paper_trading
        self.trading_client = TradingClient(
            api_key=api_key,
            secret_key=secret_key,
            paper=paper_trading,
        )
        self.data_client = StockHistoricalDataClient(
            api_key=api_key,
            secret_key=secret_key,
        )
        self.retry_policy = retry_policy or RetryPolicy.for_vendor_calls()

    async def _call(
        self,
        func,
        *args: Any,
        operation: str,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> Any:
        return await execute_with_retry(
            func,
            *args,
            retry_policy=retry_policy or self.retry_policy,
            metadata={"broker": "alpaca", "operation": operation, "paper": self.paper_trading},
            failure_exception_cls=ExternalServiceError,
            run_in_executor=True,
            **kwargs,
        )

    async def fetch_portfolio(self) -> PortfolioSnapshot:
        account = await self._call(self.trading_client.get_account, operation="get_account")
        positions = await self._call(self.trading_client.get_all_positions, operation="get_all_positions")

        try:
            orders = await self._call(
                self.trading_client.get_orders,
                filter=GetOrdersRequest(status=QueryOrderStatus.OPEN),
                operation="get_orders",
            )
        except ExternalServiceError as e:
            logger.warning("Failed to fetch open orders, continuing without them", error=str(e))
            orders = []

        return assemble_snapshot(
            self._account_payload(account),
            [self._position_payload(p) for p in positions],
            [self._order_payload(o) for o in orders],
        )

    @staticmethod
    def _account_payload(account: Any) -> Dict[str, Any]:
        return {
            "cash": account.cash,
            "portfolio_value": account.portfolio_value,
            "buying_power": account.buying_power,
            "equity": account.equity,
            "long_market_value": account.long_market_value,
        }

    @staticmethod
    def _position_payload(position: Any) -> Dict[str, Any]:
        return {
            "symbol": position.symbol,
            "qty": position.qty,
            "avg_entry_price": position.avg_entry_price,
            "current_price": position.current_price,
            "lastday_price": getattr(position, "lastday_price", None),
            "market_value": position.market_value,
            "unrealized_pl": position.unrealized_pl,
            "unrealized_plpc": position.unrealized_plpc,
        }

    @staticmethod
    def _order_payload(order: Any) -> Dict[str, Any]:
        return {
            "symbol": order.symbol,
            "side": _plain(order.side),
            "qty": order.qty,
            "notional": order.notional,
            "limit_price": order.limit_price,
            "type": _plain(getattr(order, "order_type", None) or getattr(order, "type", None)),
            "status": _plain(order.status),
            "submitted_at": order.submitted_at,
        }

    async def submit_order(self, order: OrderRequest) -> OrderResponse:
        """Submit a market (or limit) order.

        Raises:
            ValidationError: Order parameters are invalid
            ExternalServiceError: Alpaca API call failed
        """
        side = OrderSide.BUY if order.action == OrderAction.BUY else OrderSide.SELL
        size: Dict[str, Any] = {}
        if order.quantity is not None:
            size["qty"] = order.quantity
        elif order.notional:
            size["notional"] = round(order.notional, 2)
        else:
            raise ValidationError(
                "Order needs a quantity or a notional amount",
                details={"symbol": order.symbol},
            )

        if order.order_type == OrderType.LIMIT:
            if order.limit_price is None:
                raise ValidationError(
                    "Limit price required for LIMIT orders",
                    details={"symbol": order.symbol},
                )
            request = LimitOrderRequest(
                symbol=order.symbol,
                side=side,
                time_in_force=TimeInForce.DAY,
                limit_price=order.limit_price,
                client_order_id=order.client_order_id,
                **size,
            )
        else:
            request = MarketOrderRequest(
                symbol=order.symbol,
                side=side,
                time_in_force=TimeInForce.DAY,
                client_order_id=order.client_order_id,
                **size,
            )

        # Single attempt: a retried submission could place a second order
        try:
            response = await self._call(
                self.trading_client.submit_order,
                order_data=request,
                operation="submit_order",
                retry_policy=RetryPolicy(max_attempts=1),
            )
        except ExternalServiceError as e:
            if _DUPLICATE_CLIENT_ID_MARKER in str(e.__cause__ or e).lower():
                raise DuplicateOrderError(
                    f"Alpaca already holds order {order.client_order_id}",
                    details={"client_order_id": order.client_order_id, "symbol": order.symbol},
                ) from e
            logger.error("Alpaca order submission failed", symbol=order.symbol, action=order.action.value)
            raise

        logger.info(
            "Order submitted to Alpaca",
            order_id=str(response.id),
            symbol=order.symbol,
            side=side.value,
            **size,
        )

        return _order_response(response, order.action)

    async def get_order_by_client_id(self, client_order_id: str) -> Optional[OrderResponse]:
        try:
            response = await self._call(
                self.trading_client.get_order_by_client_id,
                client_order_id,
                operation="get_order_by_client_id",
            )
        except ExternalServiceError as e:
            cause = str(e.__cause__ or e).lower()
            if "not found" in cause or "404" in cause:
                return None
            raise
        side = str(_plain(response.side)).lower()
        return _order_response(response, OrderAction.BUY if side == "buy" else OrderAction.SELL)

    async def get_latest_price(self, symbol: str) -> float:
        """Mid price of the latest quote."""
        symbol = symbol.upper()
        quotes = await self._call(
            self.data_client.get_stock_latest_quote,
            StockLatestQuoteRequest(symbol_or_symbols=symbol),
            operation="get_stock_latest_quote",
        )
        if symbol not in quotes:
            raise ResourceNotFoundError(f"No quote found for {symbol}", details={"symbol": symbol})

        quote = quotes[symbol]
        bid = float(quote.bid_price or 0)
        ask = float(quote.ask_price or 0)
        if bid > 0 and ask > 0:
            return (bid + ask) / 2
        return ask or bid
