"""Unit tests for intent normalization and overrides."""

import pytest

from tradeflow.schemas.decision import Intent, TradeDirection
from tradeflow.schemas.portfolio import OpenOrder
from tradeflow.services.intent import has_open_position, normalise_intent, resolve_intent


class TestNormaliseIntent:
    @pytest.mark.parametrize(
        "decision,has_position,expected",
        [
            ("BUY", False, Intent.BUILD),
            ("BUY", True, Intent.ADD),
            ("build", False, Intent.BUILD),
            ("ADD", True, Intent.ADD),
            ("SELL", True, Intent.TRIM),
            ("SELL", False, Intent.EXIT),
            ("TRIM", True, Intent.TRIM),
            ("EXIT", True, Intent.EXIT),
            (" hold ", True, Intent.HOLD),
        ],
    )
    def test_keywords(self, decision, has_position, expected):
        assert normalise_intent(decision, has_position) is expected

    def test_unknown_keyword_falls_back(self):
        """Unknown verdicts hold an existing position and build a new one."""
        assert normalise_intent("ACCUMULATE", True) is Intent.HOLD
        assert normalise_intent("ACCUMULATE", False) is Intent.BUILD
        assert normalise_intent("", False) is Intent.BUILD


class TestResolveIntent:
    def test_plain_buy(self):
        resolution = resolve_intent("BUY", False, [], "AAPL")

        assert resolution.intent is Intent.BUILD
        assert resolution.direction is TradeDirection.BUY
        assert resolution.warnings == []
        assert resolution.pending_order_override is False

    def test_exit_without_position_is_hold(self):
        resolution = resolve_intent("EXIT", False, [], "AAPL")

        assert resolution.intent is Intent.HOLD
        assert resolution.base_intent is Intent.EXIT
        assert "no position exists for AAPL" in resolution.warnings[0]

    def test_sell_without_position_is_hold(self):
        resolution = resolve_intent("SELL", False, [], "AAPL")

        assert resolution.intent is Intent.HOLD
        assert resolution.direction is TradeDirection.HOLD

    def test_pending_buy_blocks_buy(self):
        pending = [OpenOrder(symbol="AAPL", side="buy", notional=500)]

        resolution = resolve_intent("BUY", True, pending, "AAPL")

        assert resolution.intent is Intent.HOLD
        assert resolution.pending_order_override is True
        assert "pending BUY order" in resolution.warnings[0]

    def test_pending_sell_blocks_sell(self):
        pending = [OpenOrder(symbol="AAPL", side="SELL", qty=3)]

        resolution = resolve_intent("TRIM", True, pending, "AAPL")

        assert resolution.intent is Intent.HOLD
        assert "pending SELL order" in resolution.warnings[0]

    def test_opposite_side_pending_order_does_not_block(self):
        pending = [OpenOrder(symbol="AAPL", side="sell", qty=3)]

        resolution = resolve_intent("BUY", True, pending, "AAPL")

        assert resolution.intent is Intent.ADD
        assert resolution.pending_order_override is False


def test_has_open_position():
    assert has_open_position(10, 1000) is True
    assert has_open_position(0, 1000) is False
    assert has_open_position(10, 0) is False
    assert has_open_position(None, None) is False
