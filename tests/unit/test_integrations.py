"""Unit tests for brokerage and AI provider integrations with mocked SDKs."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tradeflow.core.errors import DuplicateOrderError, ErrorType, PhaseExecutionError
from tradeflow.core.resilience import CircuitBreakerState, RetryPolicy
from tradeflow.db.models import UserSettings
from tradeflow.schemas.trigger import ApiSettings
from tradeflow.services.ai_client import AICompletionClient, build_ai_client, create_chat_model
from tradeflow.services.broker_adapter import OrderAction, OrderRequest, OrderStatus
from tradeflow.services.brokers.alpaca_adapter import AlpacaBrokerAdapter
from tradeflow.services.brokers.factory import select_alpaca_credentials
from tradeflow.services.scheduler import AnalysisScheduler


class TestSelectAlpacaCredentials:
    def test_request_paper_keys(self, api_settings):
        assert select_alpaca_credentials(api_settings) == ("paper-key", "paper-secret", True)

    def test_stored_live_keys(self):
        stored = UserSettings(
            user_id="user-1",
            alpaca_paper_trading=False,
            alpaca_live_api_key="live-key",
            alpaca_live_secret_key="live-secret",
        )

        assert select_alpaca_credentials(None, stored) == ("live-key", "live-secret", False)

    def test_missing_keys(self):
        settings = ApiSettings(ai_provider="openai", ai_api_key="sk-test")

        with pytest.raises(PhaseExecutionError) as exc_info:
            select_alpaca_credentials(settings)

        assert exc_info.value.error_type is ErrorType.API_KEY


@pytest.fixture
def alpaca():
    adapter = AlpacaBrokerAdapter("key", "secret", paper_trading=True, retry_policy=RetryPolicy(max_attempts=1))
    adapter.trading_client = MagicMock()
    adapter.data_client = MagicMock()
    return adapter


@pytest.mark.asyncio
class TestAlpacaBrokerAdapter:
    async def test_fetch_portfolio(self, alpaca):
        alpaca.trading_client.get_account.return_value = SimpleNamespace(
            cash="20000",
            portfolio_value="50000",
            buying_power="40000",
            equity="50000",
            long_market_value="30000",
        )
        alpaca.trading_client.get_all_positions.return_value = [
            SimpleNamespace(
                symbol="AAPL",
                qty="100",
                avg_entry_price="250",
                current_price="300",
                lastday_price="298",
                market_value="30000",
                unrealized_pl="5000",
                unrealized_plpc="0.2",
            )
        ]
        alpaca.trading_client.get_orders.return_value = [
            SimpleNamespace(
                symbol="AAPL",
                side="buy",
                qty="10",
                notional=None,
                limit_price="290",
                order_type="limit",
                status="new",
                submitted_at=None,
            )
        ]

        snapshot = await alpaca.fetch_portfolio()

        assert snapshot.account.original_cash == 20000
        assert snapshot.account.reserved_capital == pytest.approx(2900)
        assert snapshot.account.cash == pytest.approx(17100)
        assert snapshot.position_for("AAPL").unrealized_pl_percent == pytest.approx(20)

    async def test_open_orders_failure_degrades(self, alpaca):
        alpaca.trading_client.get_account.return_value = SimpleNamespace(
            cash="1000", portfolio_value="1000", buying_power="1000", equity="1000", long_market_value="0"
        )
        alpaca.trading_client.get_all_positions.return_value = []
        alpaca.trading_client.get_orders.side_effect = ConnectionError("reset")

        snapshot = await alpaca.fetch_portfolio()

        assert snapshot.open_orders == []
        assert snapshot.account.cash == 1000

    async def test_submit_notional_order(self, alpaca):
        alpaca.trading_client.submit_order.return_value = SimpleNamespace(
            id="order-1",
            status="accepted",
            symbol="AAPL",
            qty=None,
            filled_qty="0",
            filled_avg_price=None,
            notional="2500",
            submitted_at=None,
            filled_at=None,
        )

        response = await alpaca.submit_order(
            OrderRequest(symbol="AAPL", action=OrderAction.BUY, notional=2500.004, client_order_id="a-1")
        )

        request = alpaca.trading_client.submit_order.call_args.kwargs["order_data"]
        assert float(request.notional) == 2500.0
        assert request.client_order_id == "a-1"
        assert response.order_id == "order-1"
        assert response.status is OrderStatus.SUBMITTED

    async def test_latest_price_is_quote_mid(self, alpaca):
        alpaca.data_client.get_stock_latest_quote.return_value = {
            "AAPL": SimpleNamespace(bid_price=99.0, ask_price=101.0)
        }

        assert await alpaca.get_latest_price("aapl") == 100.0

    async def test_duplicate_client_order_id(self, alpaca):
        alpaca.trading_client.submit_order.side_effect = Exception(
            '{"code":40010001,"message":"client_order_id must be unique"}'
        )

        with pytest.raises(DuplicateOrderError) as exc_info:
            await alpaca.submit_order(
                OrderRequest(symbol="AAPL", action=OrderAction.BUY, notional=2500, client_order_id="a-1")
            )

        assert exc_info.value.details["client_order_id"] == "a-1"
        assert alpaca.trading_client.submit_order.call_count == 1

    async def test_order_by_client_id(self, alpaca):
        alpaca.trading_client.get_order_by_client_id.return_value = SimpleNamespace(
            id="order-1",
            status="filled",
            symbol="AAPL",
            side="sell",
            qty="10",
            filled_qty="10",
            filled_avg_price="101.5",
            notional=None,
            submitted_at=None,
            filled_at=None,
        )

        response = await alpaca.get_order_by_client_id("a-1")

        alpaca.trading_client.get_order_by_client_id.assert_called_once_with("a-1")
        assert response.order_id == "order-1"
        assert response.action is OrderAction.SELL
        assert response.status is OrderStatus.FILLED
        assert response.average_fill_price == 101.5

    async def test_unknown_client_order_id(self, alpaca):
        alpaca.trading_client.get_order_by_client_id.side_effect = Exception(
            '{"code":40410000,"message":"order not found"}'
        )

        assert await alpaca.get_order_by_client_id("a-1") is None


@pytest.mark.asyncio
class TestAICompletionClient:
    async def test_complete_returns_text(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=SimpleNamespace(content="DECISION: BUY"))
        client = AICompletionClient("openai", "sk-test", retry_policy=RetryPolicy(max_attempts=1))

        with patch("tradeflow.services.ai_client.create_chat_model", return_value=llm):
            text = await client.complete("prompt", system_prompt="You are a risk manager.")

        assert text == "DECISION: BUY"
        messages = llm.ainvoke.call_args.args[0]
        assert messages[0].content == "You are a risk manager."

    async def test_provider_errors_are_classified(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("Error code: 429 - Rate limit reached"))
        client = AICompletionClient("openai", "sk-test", retry_policy=RetryPolicy(max_attempts=1))

        with patch("tradeflow.services.ai_client.create_chat_model", return_value=llm):
            with pytest.raises(PhaseExecutionError) as exc_info:
                await client.complete("prompt")

        assert exc_info.value.error_type is ErrorType.RATE_LIMIT

    async def test_empty_completion(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=SimpleNamespace(content=[{"type": "text", "text": "  "}]))
        client = AICompletionClient("anthropic", "sk-test", retry_policy=RetryPolicy(max_attempts=1))

        with patch("tradeflow.services.ai_client.create_chat_model", return_value=llm):
            with pytest.raises(PhaseExecutionError) as exc_info:
                await client.complete("prompt")

        assert exc_info.value.error_type is ErrorType.AI_ERROR

    async def test_missing_api_key(self):
        with pytest.raises(PhaseExecutionError) as exc_info:
            AICompletionClient("openai", "")

        assert exc_info.value.error_type is ErrorType.API_KEY

    async def test_open_provider_breaker_stops_calls(self):
        settings = ApiSettings(ai_provider="anthropic", ai_api_key="sk-outage")
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=ConnectionError("overloaded"))
        first = build_ai_client(settings)
        threshold = first.circuit_breaker.failure_threshold
        first.retry_policy = RetryPolicy(max_attempts=threshold, initial_backoff=0, jitter=0)

        with patch("tradeflow.services.ai_client.create_chat_model", return_value=llm):
            with pytest.raises(PhaseExecutionError):
                await first.complete("prompt")
            calls = llm.ainvoke.call_count

            with pytest.raises(PhaseExecutionError) as exc_info:
                await build_ai_client(settings).complete("prompt")

        assert first.circuit_breaker.state is CircuitBreakerState.OPEN
        assert llm.ainvoke.call_count == calls
        assert "Circuit breaker open" in exc_info.value.message


def test_breaker_shared_per_provider_account():
    openai = ApiSettings(ai_provider="openai", ai_api_key="sk-shared")

    breaker = build_ai_client(openai).circuit_breaker

    assert build_ai_client(openai).circuit_breaker is breaker
    assert build_ai_client(openai.model_copy(update={"ai_api_key": "sk-other"})).circuit_breaker is not breaker
    assert build_ai_client(openai.model_copy(update={"ai_provider": "deepseek"})).circuit_breaker is not breaker
    assert breaker.name == "ai:openai"


def test_unsupported_provider():
    with pytest.raises(PhaseExecutionError):
        create_chat_model("mystery", "model-x", "key")


@pytest.mark.asyncio
async def test_scheduled_scan_skips_while_running():
    scanner = MagicMock()
    scanner.scan = AsyncMock(return_value="summary")
    scheduler = AnalysisScheduler(scanner)

    scheduler._scan_running = True
    assert await scheduler.run_near_limit_scan() is None
    scanner.scan.assert_not_called()

    scheduler._scan_running = False
    assert await scheduler.run_near_limit_scan() == "summary"
    assert scheduler._scan_running is False
