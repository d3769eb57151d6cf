"""Trade action repository."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import TradeAction
from .base import BaseRepository


class TradeActionRepository(BaseRepository[TradeAction]):
    """Repository for the write-once trade_actions table."""

    def __init__(self, session: AsyncSession):
        super().__init__(TradeAction, session)

    async def get_by_analysis_id(self, analysis_id: str) -> Optional[TradeAction]:
        return await self.first_where(TradeAction.analysis_id == analysis_id)

    async def list_pending_by_user(self, user_id: str) -> List[TradeAction]:
        """Get a user's orders that are still waiting for approval or execution."""
        return await self.list_where(
            TradeAction.user_id == user_id,
            TradeAction.status.in_(["pending", "submitting"]),
        )

    async def claim_pending(self, analysis_id: str, status: str) -> bool:
        """Move a pending, unsubmitted order to ``status``; True only for the one writer that wins."""
        statement = (
            update(TradeAction)
            .where(
                TradeAction.analysis_id == analysis_id,
                TradeAction.status == "pending",
                TradeAction.broker_order_id.is_(None),
            )
            .values(status=status)
        )
        result = await self.session.execute(statement)
        await self.session.commit()
        return result.rowcount == 1
