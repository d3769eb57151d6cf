"""Wire format for portfolio-manager decision lines.

``BUY $3000 worth AAPL`` | ``SELL $2000 worth AAPL`` | ``HOLD AAPL``. Raw
strings stop here; callers get a ``ParsedDecision`` or None (HOLD).
"""

from __future__ import annotations

import re
from typing import Optional

from ..schemas.decision import ParsedDecision, Recommendation, TradeDirection

_TRADE_PATTERN = re.compile(r"(BUY|SELL)\s+\$([0-9,]+(?:\.\d+)?)\s+worth\s+([A-Z0-9./]+)")
_HOLD_PATTERN = re.compile(r"HOLD\s+([A-Z0-9./]+)")


def parse_decision_line(text: Optional[str]) -> Optional[ParsedDecision]:
    """Parse the first decision line found in ``text``; None when nothing matches."""
    if not text:
        return None

    match = _TRADE_PATTERN.search(text)
    if match:
        amount = float(match.group(2).replace(",", ""))
        return ParsedDecision(
            action=TradeDirection(match.group(1)),
            dollar_amount=amount,
            ticker=match.group(3),
        )

    match = _HOLD_PATTERN.search(text)
    if match:
        return ParsedDecision(action=TradeDirection.HOLD, ticker=match.group(1))

    return None


def format_decision_line(action: TradeDirection, ticker: str, dollar_amount: float = 0.0) -> str:
    if action == TradeDirection.HOLD:
        return f"HOLD {ticker}"
    return f"{action.value} ${round(dollar_amount):.0f} worth {ticker}"


_VERDICT_PATTERN = re.compile(r"DECISION:\s*\**\s*([A-Za-z]+)", re.IGNORECASE)
_CONFIDENCE_PATTERN = re.compile(r"CONFIDENCE:\s*\**\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_VERDICTS = {"BUY", "SELL", "HOLD", "BUILD", "ADD", "TRIM", "EXIT"}


def parse_risk_verdict(text: Optional[str]) -> Recommendation:
    """Read ``DECISION: <word>`` and ``CONFIDENCE: <n>`` off a risk assessment.

    A missing or unknown verdict is HOLD; a missing confidence is 50.
    """
    decision = "HOLD"
    confidence = 50.0
    if text:
        match = _VERDICT_PATTERN.search(text)
        if match and match.group(1).upper() in _VERDICTS:
            decision = match.group(1).upper()
        match = _CONFIDENCE_PATTERN.search(text)
        if match:
            confidence = min(max(float(match.group(1)), 0.0), 100.0)
    return Recommendation(decision=decision, confidence=confidence)
