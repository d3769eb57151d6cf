"""User settings and rebalance request repositories."""

from __future__ import annotations

from typing import List, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import RebalanceRequest, UserSettings
from .base import BaseRepository


class UserSettingsRepository(BaseRepository[UserSettings]):
    def __init__(self, session: AsyncSession):
        super().__init__(UserSettings, session)

    async def get_near_limit_enabled(self) -> List[UserSettings]:
        """Get users who opted into automatic near-limit analysis."""
        return await self.list_where(UserSettings.auto_near_limit_analysis.is_(True))


class RebalanceRequestRepository(BaseRepository[RebalanceRequest]):
    def __init__(self, session: AsyncSession):
        super().__init__(RebalanceRequest, session)

    async def get_by_user_and_status(
        self, user_id: str, statuses: Sequence[str]
    ) -> List[RebalanceRequest]:
        return await self.list_where(
            RebalanceRequest.user_id == user_id,
            RebalanceRequest.status.in_(list(statuses)),
        )
