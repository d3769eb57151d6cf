"""Write-once trade order gate keyed by analysis id."""

from __future__ import annotations

import json
from typing import Any, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError

from ..core.errors import ResourceNotFoundError
from ..db.models import TradeAction
from ..db.session import DatabaseManager
from ..repositories import TradeActionRepository
from ..schemas.decision import TradeOrder

logger = structlog.get_logger(__name__)

SUBMITTING = "submitting"


def trade_action_from_order(order: TradeOrder, user_id: str) -> TradeAction:
    return TradeAction(
        analysis_id=order.analysis_id,
        user_id=user_id,
        ticker=order.ticker,
        action=order.action.value,
        dollar_amount=order.dollar_amount,
        shares=order.shares,
        confidence=order.confidence,
        close_position=order.close_position,
        reasoning=order.reasoning,
        order_json=json.dumps(
            {
                "intent": order.intent.value,
                "before": order.before.model_dump(),
                "after": order.after.model_dump(),
                "changes": order.changes.model_dump(),
            }
        ),
    )


class IdempotencyGate:
    """At most one persisted order per analysis.

    A retried portfolio phase finds the existing row and reuses it; two
    concurrent first writers are separated by the unique ``analysis_id``.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def find_existing(self, analysis_id: str) -> Optional[TradeAction]:
        async with self.db.session_factory() as session:
            return await TradeActionRepository(session).get_by_analysis_id(analysis_id)

    async def record(self, order: TradeOrder, user_id: str) -> Tuple[TradeAction, bool]:
        """Persist ``order`` unless a row for its analysis already exists.

        Returns:
            (row, created); the row is ours or the one that won the race
        """
        async with self.db.session_factory() as session:
            repo = TradeActionRepository(session)
            try:
                action = await repo.create(trade_action_from_order(order, user_id))
            except IntegrityError:
                logger.info("Trade order already recorded, reusing it", analysis_id=order.analysis_id)
            else:
                logger.info(
                    "Trade order recorded",
                    analysis_id=order.analysis_id,
                    ticker=order.ticker,
                    action=order.action.value,
                    dollar_amount=round(order.dollar_amount, 2),
                )
                return action, True

        existing = await self.find_existing(order.analysis_id)
        if existing is None:
            raise ResourceNotFoundError(
                f"Trade order for {order.analysis_id} missing after a unique conflict",
                details={"analysis_id": order.analysis_id},
            )
        return existing, False

    async def update_order(self, analysis_id: str, **fields: Any) -> TradeAction:
        """Update execution fields (status, broker order id) of the persisted order."""
        async with self.db.session_factory() as session:
            repo = TradeActionRepository(session)
            action = await repo.get_by_analysis_id(analysis_id)
            if action is None:
                raise ResourceNotFoundError(
                    f"No trade order for analysis {analysis_id}",
                    details={"analysis_id": analysis_id},
                )
            return await repo.update(db_obj=action, obj_in=fields)

    async def claim_for_submission(self, analysis_id: str) -> bool:
        """Claim the pending order for submission.

        Exactly one caller gets True; everyone else (a concurrent run, or a
        retry after the claimant was cut off) must reconcile with the broker
        instead of submitting.
        """
        async with self.db.session_factory() as session:
            claimed = await TradeActionRepository(session).claim_pending(analysis_id, SUBMITTING)
        logger.info("Order submission claim", analysis_id=analysis_id, claimed=claimed)
        return claimed
