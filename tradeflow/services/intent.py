"""Intent normalization: raw risk-manager verdicts to BUILD/ADD/TRIM/EXIT/HOLD."""

from __future__ import annotations

from typing import Iterable, List

import structlog

from ..schemas.decision import Intent, IntentResolution, TradeDirection
from ..schemas.portfolio import OpenOrder

logger = structlog.get_logger(__name__)

_BUY_KEYWORDS = {"BUILD", "ADD", "BUY"}


def normalise_intent(decision: str, has_position: bool) -> Intent:
    """Map a decision keyword to a base intent, conditioned on an existing position.

    Unrecognized keywords fall back to HOLD with a position and BUILD
    without one, and are logged as unknown.
    """
    keyword = (decision or "").strip().upper()

    if keyword in _BUY_KEYWORDS:
        return Intent.ADD if has_position else Intent.BUILD
    if keyword == "TRIM":
        return Intent.TRIM
    if keyword == "EXIT":
        return Intent.EXIT
    if keyword == "SELL":
        return Intent.TRIM if has_position else Intent.EXIT
    if keyword == "HOLD":
        return Intent.HOLD

    fallback = Intent.HOLD if has_position else Intent.BUILD
    logger.warning(
        "Unknown decision keyword, using fallback intent",
        decision=decision,
        has_position=has_position,
        fallback=fallback.value,
    )
    return fallback


def resolve_intent(
    decision: str,
    has_position: bool,
    pending_orders: Iterable[OpenOrder],
    ticker: str,
) -> IntentResolution:
    """Normalize a decision and apply the no-position and pending-order overrides.

    Overrides are applied in order: TRIM/EXIT without a position becomes
    HOLD, then a BUY-directed intent with a pending BUY (or SELL-directed
    with a pending SELL) becomes HOLD. Neither is an error.
    """
    base_intent = normalise_intent(decision, has_position)
    intent = base_intent
    warnings: List[str] = []
    pending_override = False

    if intent in (Intent.TRIM, Intent.EXIT) and not has_position:
        warnings.append(
            f"Risk Manager recommended {intent.value} but no position exists for {ticker}. "
            "Treating as HOLD."
        )
        intent = Intent.HOLD

    pending_sides = {order.side.lower() for order in pending_orders}
    direction = intent.direction
    if direction == TradeDirection.BUY and "buy" in pending_sides:
        warnings.append(
            f"Decision overridden from {intent.value} to HOLD due to existing pending BUY order."
        )
        intent = Intent.HOLD
        pending_override = True
    elif direction == TradeDirection.SELL and "sell" in pending_sides:
        warnings.append(
            f"Decision overridden from {intent.value} to HOLD due to existing pending SELL order."
        )
        intent = Intent.HOLD
        pending_override = True

    if warnings:
        logger.info(
            "Intent overridden",
            ticker=ticker,
            base_intent=base_intent.value,
            intent=intent.value,
            warnings=warnings,
        )

    return IntentResolution(
        intent=intent,
        base_intent=base_intent,
        direction=intent.direction,
        warnings=warnings,
        pending_order_override=pending_override,
    )


def has_open_position(qty: float | None, market_value: float | None) -> bool:
    return bool(qty and qty > 0 and (market_value or 0) > 0)
