"""Wiring of the services shared by the API process and standalone workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .db.session import DatabaseManager
from .services.ai_client import build_ai_client
from .services.analysis_store import AnalysisRecordService
from .services.brokers.factory import create_broker_adapter
from .services.cancellation import CancellationGuard
from .services.idempotency import IdempotencyGate
from .services.near_limit_scanner import NearLimitScanner
from .services.phase_supervisor import PhaseSupervisor
from .services.phases import PhaseDependencies, PhaseRouter
from .services.phases.base import AIClientFactory, BrokerFactory
from .services.scheduler import AnalysisScheduler
from .services.task_queue import TaskQueueService
from .services.user_settings import UserSettingsService
from .services.workflow import WorkflowCoordinator


@dataclass
class Runtime:
    db: DatabaseManager
    queue: TaskQueueService
    store: AnalysisRecordService
    coordinator: WorkflowCoordinator
    supervisor: PhaseSupervisor
    scanner: NearLimitScanner
    scheduler: AnalysisScheduler

    async def close(self) -> None:
        await self.queue.close()


def build_runtime(
    db: DatabaseManager,
    queue: Optional[TaskQueueService] = None,
    *,
    broker_factory: BrokerFactory = create_broker_adapter,
    ai_client_factory: AIClientFactory = build_ai_client,
    phase_timeout_seconds: Optional[float] = None,
) -> Runtime:
    queue = queue or TaskQueueService()
    store = AnalysisRecordService(db)
    user_settings = UserSettingsService(db)
    deps = PhaseDependencies(
        store=store,
        guard=CancellationGuard(store),
        gate=IdempotencyGate(db),
        user_settings=user_settings,
        broker_factory=broker_factory,
        ai_client_factory=ai_client_factory,
    )
    coordinator = WorkflowCoordinator(store, queue)
    scanner = NearLimitScanner(db, coordinator, user_settings=user_settings, broker_factory=broker_factory)
    return Runtime(
        db=db,
        queue=queue,
        store=store,
        coordinator=coordinator,
        supervisor=PhaseSupervisor(PhaseRouter(deps), timeout_seconds=phase_timeout_seconds),
        scanner=scanner,
        scheduler=AnalysisScheduler(scanner),
    )
