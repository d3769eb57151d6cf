"""Phase handlers for the analysis workflow."""

from __future__ import annotations

from typing import Dict

from ...core.errors import ErrorType, PhaseExecutionError
from ..task_queue import PhaseTask
from .base import BasePhase, PhaseDependencies
from .execution import ExecutionPhase
from .market import MarketPhase
from .portfolio import PortfolioPhase
from .research import ResearchPhase
from .risk import RiskPhase

PHASE_CLASSES = (MarketPhase, ResearchPhase, RiskPhase, PortfolioPhase, ExecutionPhase)


def build_phase_registry(deps: PhaseDependencies) -> Dict[str, BasePhase]:
    return {cls.name: cls(deps) for cls in PHASE_CLASSES}


class PhaseRouter:
    """Dispatches a queued task to the handler named by ``task.phase``."""

    def __init__(self, deps: PhaseDependencies):
        self.phases = build_phase_registry(deps)

    async def __call__(self, task: PhaseTask) -> None:
        handler = self.phases.get(task.phase)
        if handler is None:
            raise PhaseExecutionError(
                f"Unknown phase: {task.phase}",
                error_type=ErrorType.OTHER,
                details={"phase": task.phase},
            )
        await handler(task)


__all__ = [
    "BasePhase",
    "ExecutionPhase",
    "MarketPhase",
    "PhaseDependencies",
    "PhaseRouter",
    "PortfolioPhase",
    "ResearchPhase",
    "RiskPhase",
    "build_phase_registry",
]
