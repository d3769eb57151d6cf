"""Unit tests for the portfolio decision engine."""

import pytest

from tradeflow.schemas.decision import Intent, Recommendation, TradeDirection
from tradeflow.schemas.policy import UserPolicy
from tradeflow.schemas.portfolio import AccountSnapshot, OpenOrder, PortfolioSnapshot, PositionSnapshot
from tradeflow.services.decision_engine import PORTFOLIO_MANAGER_SYSTEM_PROMPT, DecisionEngine, position_size_status


def snapshot(cash: float, total: float, positions=(), open_orders=()) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        account=AccountSnapshot(cash=cash, original_cash=cash, portfolio_value=total),
        positions=list(positions),
        open_orders=list(open_orders),
    )


def aapl(qty: float, price: float = 100.0) -> PositionSnapshot:
    return PositionSnapshot(symbol="AAPL", qty=qty, avg_entry_price=price, current_price=price, market_value=qty * price)


async def decide(engine: DecisionEngine, recommendation: Recommendation, snap: PortfolioSnapshot, **kwargs):
    return await engine.decide(
        analysis_id="analysis-1",
        ticker="AAPL",
        recommendation=recommendation,
        snapshot=snap,
        policy=kwargs.pop("policy", UserPolicy()),
        current_price=100.0,
        **kwargs,
    )


@pytest.mark.asyncio
class TestDeterministicDecisions:
    def setup_method(self):
        self.engine = DecisionEngine(confidence_risk_adjustment=False)

    async def test_buy_is_sized_and_ordered(self):
        decision = await decide(self.engine, Recommendation(decision="BUY", confidence=85), snapshot(30000, 50000))

        assert decision.action is TradeDirection.BUY
        assert decision.final_intent is Intent.BUILD
        assert decision.decision_line == "BUY $3250 worth AAPL"
        assert decision.deployable_cash == pytest.approx(20000)
        assert decision.order.analysis_id == "analysis-1"
        assert decision.order.dollar_amount <= decision.deployable_cash

    async def test_buy_demoted_when_cash_floor_reached(self):
        decision = await decide(self.engine, Recommendation(decision="BUY", confidence=85), snapshot(10000, 50000))

        assert decision.action is TradeDirection.HOLD
        assert decision.final_intent is Intent.HOLD
        assert decision.order is None
        assert decision.decision_line == "HOLD AAPL"
        assert (
            "BUILD demoted to HOLD: Allowed deployable cash is exhausted due to 20% target cash floor"
            in decision.messages
        )

    async def test_pending_buy_holds(self):
        snap = snapshot(
            30000,
            50000,
            positions=[aapl(50)],
            open_orders=[OpenOrder(symbol="AAPL", side="buy", notional=1000, reserved_capital=1000)],
        )

        decision = await decide(self.engine, Recommendation(decision="BUY", confidence=90), snap)

        assert decision.action is TradeDirection.HOLD
        assert decision.resolution.pending_order_override is True
        assert any("pending BUY order" in message for message in decision.messages)

    async def test_hold_converted_to_full_sell(self):
        snap = snapshot(9600, 10000, positions=[aapl(4)])

        decision = await decide(self.engine, Recommendation(decision="HOLD", confidence=60), snap)

        assert decision.action is TradeDirection.SELL
        assert decision.final_intent is Intent.EXIT
        assert decision.order.close_position is True
        assert decision.order.shares == 4
        assert decision.messages[-1].startswith("HOLD converted to full SELL:")

    async def test_exit_without_position_holds(self):
        decision = await decide(self.engine, Recommendation(decision="EXIT", confidence=90), snapshot(30000, 50000))

        assert decision.action is TradeDirection.HOLD
        assert decision.resolution.base_intent is Intent.EXIT

    async def test_confidence_adjustment(self):
        engine = DecisionEngine(confidence_risk_adjustment=True)
        policy = UserPolicy(risk_level="conservative")

        decision = await decide(
            engine, Recommendation(decision="BUY", confidence=80), snapshot(30000, 50000), policy=policy
        )

        assert decision.confidence == 76
        assert "Confidence adjusted from 80% to 76% for conservative risk profile" in decision.messages


@pytest.mark.asyncio
class TestPortfolioManagerConsult:
    async def test_parsed_amount_is_used(self, scripted_ai):
        ai = scripted_ai(default="BUY $4000 worth AAPL")
        engine = DecisionEngine(ai_client=ai, confidence_risk_adjustment=False)

        decision = await decide(engine, Recommendation(decision="BUY", confidence=85), snapshot(30000, 50000))

        assert decision.decision_line == "BUY $4000 worth AAPL"
        assert ai.calls[0]["system_prompt"] == PORTFOLIO_MANAGER_SYSTEM_PROMPT
        assert "Sizing model suggestion: BUY $3250 worth AAPL" in ai.calls[0]["prompt"]

    async def test_prompt_flags_position_near_max(self, scripted_ai):
        ai = scripted_ai(default="HOLD AAPL")
        engine = DecisionEngine(ai_client=ai, confidence_risk_adjustment=False)

        snap = snapshot(30000, 50000, positions=[aapl(105)])

        await decide(engine, Recommendation(decision="BUY", confidence=85), snap)

        prompt = ai.calls[0]["prompt"]
        assert "Current holding: 105 shares worth $10,500.00 (+0.0% unrealized P/L) [NEAR MAX]" in prompt

    async def test_parsed_amount_is_bounded(self, scripted_ai):
        engine = DecisionEngine(ai_client=scripted_ai(default="BUY $50000 worth AAPL"), confidence_risk_adjustment=False)

        decision = await decide(engine, Recommendation(decision="BUY", confidence=85), snapshot(30000, 50000))

        assert decision.sizing.dollar_amount == pytest.approx(12500)
        assert any("adjusted to $12,500 by position limits" in message for message in decision.messages)

    @pytest.mark.parametrize("output", ["I really like this stock", "BUY $3000 worth MSFT"])
    async def test_unusable_output_holds(self, scripted_ai, output):
        engine = DecisionEngine(ai_client=scripted_ai(default=output), confidence_risk_adjustment=False)

        decision = await decide(engine, Recommendation(decision="BUY", confidence=85), snapshot(30000, 50000))

        assert decision.action is TradeDirection.HOLD
        assert decision.order is None
        assert "Portfolio manager output could not be parsed; defaulting to HOLD" in decision.messages

    async def test_checkpoint_runs_before_consult(self, scripted_ai):
        ai = scripted_ai(default="HOLD AAPL")
        engine = DecisionEngine(ai_client=ai, confidence_risk_adjustment=False)
        seen = []

        async def checkpoint():
            seen.append(len(ai.calls))

        await decide(
            engine,
            Recommendation(decision="BUY", confidence=85),
            snapshot(30000, 50000),
            before_ai_request=checkpoint,
        )

        assert seen == [0]
        assert len(ai.calls) == 1


@pytest.mark.parametrize(
    "value,near_percent,expected",
    [
        (13000, 20, "MAX SIZE"),
        (10500, 20, "NEAR MAX"),
        (10500, 5, ""),
        (5000, 20, ""),
        (2500, 20, "MIN SIZE"),
        (2900, 20, "NEAR MIN"),
        (2900, 10, ""),
    ],
)
def test_position_size_status(value, near_percent, expected):
    """Bounds on a $50k portfolio: $2,500 minimum and $12,500 maximum."""
    policy = UserPolicy(near_position_threshold_percent=near_percent)

    assert position_size_status(value, policy, 50000) == expected
