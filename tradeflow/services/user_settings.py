"""Stored user settings access and policy construction."""

from __future__ import annotations

from typing import List, Optional

from ..core.errors import ValidationError
from ..db.models import UserSettings
from ..db.session import DatabaseManager
from ..repositories import UserSettingsRepository
from ..schemas.policy import UserPolicy
from ..schemas.trigger import ApiSettings
from .policy import build_user_policy


class UserSettingsService:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, user_id: str) -> Optional[UserSettings]:
        async with self.db.session_factory() as session:
            return await UserSettingsRepository(session).get(user_id)

    async def list_near_limit_users(self) -> List[UserSettings]:
        async with self.db.session_factory() as session:
            return await UserSettingsRepository(session).get_near_limit_enabled()

    async def read_user_policy(
        self,
        user_id: str,
        api_settings: Optional[ApiSettings] = None,
        total_value: float = 0.0,
    ) -> UserPolicy:
        """Build the user's policy for one decision against ``total_value``."""
        stored = await self.get(user_id)
        return build_user_policy(total_value, api_settings=api_settings, stored=stored)


def api_settings_from_stored(stored: UserSettings) -> ApiSettings:
    """Request settings for analyses originated without a client request.

    Raises:
        ValidationError: If the user has no AI provider credentials stored
    """
    if not stored.ai_provider or not stored.ai_api_key:
        raise ValidationError(
            "User has no AI provider configured",
            details={"user_id": stored.user_id},
        )
    return ApiSettings(
        ai_provider=stored.ai_provider,
        ai_api_key=stored.ai_api_key,
        ai_model=stored.ai_model,
        alpaca_paper_api_key=stored.alpaca_paper_api_key,
        alpaca_paper_secret_key=stored.alpaca_paper_secret_key,
        alpaca_live_api_key=stored.alpaca_live_api_key,
        alpaca_live_secret_key=stored.alpaca_live_secret_key,
        alpaca_paper_trading=stored.alpaca_paper_trading,
        user_risk_level=stored.user_risk_level,
        default_position_size_dollars=stored.default_position_size_dollars,
        auto_execute_trades=stored.auto_execute_trades,
    )
