"""Shared phase plumbing: dependencies, entry checks and AI access."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from ...db.models import UserSettings
from ...schemas.trigger import ApiSettings
from ..ai_client import AICompletionClient, build_ai_client
from ..analysis_store import AnalysisRecordService
from ..broker_adapter import BrokerAdapter
from ..brokers.factory import create_broker_adapter
from ..cancellation import CancellationGuard
from ..idempotency import IdempotencyGate
from ..task_queue import PhaseTask
from ..user_settings import UserSettingsService

logger = structlog.get_logger(__name__)

BrokerFactory = Callable[[Optional[ApiSettings], Optional[UserSettings]], BrokerAdapter]
AIClientFactory = Callable[..., Optional[AICompletionClient]]


@dataclass
class PhaseDependencies:
    store: AnalysisRecordService
    guard: CancellationGuard
    gate: IdempotencyGate
    user_settings: UserSettingsService
    broker_factory: BrokerFactory = create_broker_adapter
    ai_client_factory: AIClientFactory = build_ai_client


class BasePhase(ABC):
    """One workflow phase; writes only its own insight key."""

    name: str = ""
    title: str = ""

    def __init__(self, deps: PhaseDependencies):
        self.deps = deps

    @property
    def store(self) -> AnalysisRecordService:
        return self.deps.store

    async def __call__(self, task: PhaseTask) -> None:
        await self.deps.guard.ensure_active(task.analysis_id, f"{self.name}:entry")
        await self.store.set_step_status(
            task.analysis_id, self.name, "running", attempt=task.retry_count + 1
        )
        await self.store.update_phase(task.analysis_id, self.name, f"{self.title} started")
        await self.execute(task)

    @abstractmethod
    async def execute(self, task: PhaseTask) -> None:
        """Phase body; raise ``PhaseExecutionError`` for unrecoverable failures."""

    @staticmethod
    def api_settings(task: PhaseTask) -> ApiSettings:
        return ApiSettings.model_validate(task.api_settings)

    async def broker(self, task: PhaseTask) -> BrokerAdapter:
        stored = await self.deps.user_settings.get(task.user_id)
        return self.deps.broker_factory(self.api_settings(task), stored)

    async def complete(
        self,
        task: PhaseTask,
        prompt: str,
        system_prompt: str,
        max_tokens: Optional[int] = None,
    ) -> str:
        """AI completion behind a cancellation checkpoint."""
        await self.deps.guard.ensure_active(task.analysis_id, f"{self.name}:ai")
        client = self.deps.ai_client_factory(self.api_settings(task), max_tokens=max_tokens)
        if client is None:
            return ""
        return await client.complete(prompt, system_prompt=system_prompt, max_tokens=max_tokens)
