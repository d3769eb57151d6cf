"""Unit tests for the decision-line wire format and risk verdict parsing."""

import pytest

from tradeflow.schemas.decision import TradeDirection
from tradeflow.services.decision_parser import (
    format_decision_line,
    parse_decision_line,
    parse_risk_verdict,
)


class TestParseDecisionLine:
    def test_buy_line(self):
        parsed = parse_decision_line("BUY $3,000 worth AAPL")

        assert parsed.action is TradeDirection.BUY
        assert parsed.dollar_amount == 3000
        assert parsed.ticker == "AAPL"

    def test_sell_line_inside_prose(self):
        parsed = parse_decision_line("After review my call is: SELL $1250.50 worth MSFT today.")

        assert parsed.action is TradeDirection.SELL
        assert parsed.dollar_amount == pytest.approx(1250.5)
        assert parsed.ticker == "MSFT"

    def test_hold_line(self):
        parsed = parse_decision_line("HOLD BRK.B")

        assert parsed.action is TradeDirection.HOLD
        assert parsed.ticker == "BRK.B"
        assert parsed.dollar_amount == 0

    @pytest.mark.parametrize("text", [None, "", "I would probably buy some Apple"])
    def test_unparsable(self, text):
        assert parse_decision_line(text) is None


def test_format_decision_line():
    assert format_decision_line(TradeDirection.HOLD, "AAPL") == "HOLD AAPL"
    assert format_decision_line(TradeDirection.BUY, "AAPL", 3250) == "BUY $3250 worth AAPL"
    assert format_decision_line(TradeDirection.SELL, "AAPL", 999.6) == "SELL $1000 worth AAPL"


class TestParseRiskVerdict:
    def test_decision_and_confidence(self):
        verdict = parse_risk_verdict("Solid setup.\nDECISION: **BUY**\nCONFIDENCE: 82")

        assert verdict.decision == "BUY"
        assert verdict.confidence == 82

    def test_defaults(self):
        verdict = parse_risk_verdict("No structured answer here.")

        assert verdict.decision == "HOLD"
        assert verdict.confidence == 50

    def test_unknown_verdict_is_hold(self):
        assert parse_risk_verdict("DECISION: MAYBE\nCONFIDENCE: 70").decision == "HOLD"

    def test_confidence_is_clamped(self):
        assert parse_risk_verdict("decision: trim\nconfidence: 140").confidence == 100
