"""Deadline and bounded-retry supervision of a single phase run."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..config import get_settings
from ..core.errors import AnalysisCanceled, ErrorType, PhaseExecutionError, classify_error
from ..core.resilience import RetryPolicy
from .task_queue import PhaseTask

logger = structlog.get_logger(__name__)

PhaseRunner = Callable[[PhaseTask], Awaitable[None]]


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    CANCELED = "canceled"
    ERROR = "error"


@dataclass
class PhaseOutcome:
    status: OutcomeStatus
    phase: str
    attempts: int = 1
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    # Set when timeouts exhausted every retry; the worker dead-letters the task
    dead_letter: bool = False


class PhaseSupervisor:
    """Runs a phase under ``asyncio.wait_for`` and re-invokes it on timeout.

    Each timeout sleeps ``retry_policy.backoff(attempt)`` and runs the phase
    again with ``task.retry_count`` incremented, up to ``max_retries``.
    Cancellation yields a ``canceled`` outcome; every other failure yields
    an ``error`` outcome without retry.
    """

    def __init__(
        self,
        runner: PhaseRunner,
        *,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        settings = get_settings()
        self.runner = runner
        self.timeout_seconds = timeout_seconds or settings.phase_timeout_seconds
        self.max_retries = settings.phase_max_retries if max_retries is None else max_retries
        self.retry_policy = retry_policy or RetryPolicy.for_phase_timeouts(self.max_retries)

    async def run(self, task: PhaseTask) -> PhaseOutcome:
        attempts = 0
        while True:
            attempts += 1
            try:
                await asyncio.wait_for(self.runner(task), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Phase timed out",
                    analysis_id=task.analysis_id,
                    phase=task.phase,
                    retry_count=task.retry_count,
                    timeout_seconds=self.timeout_seconds,
                )
                if task.retry_count >= self.max_retries:
                    return PhaseOutcome(
                        status=OutcomeStatus.ERROR,
                        phase=task.phase,
                        attempts=attempts,
                        error_type=ErrorType.TIMEOUT,
                        error_message=(
                            f"Phase {task.phase} timed out after {attempts} attempts "
                            f"({self.timeout_seconds:.0f}s each)"
                        ),
                        dead_letter=True,
                    )
                await asyncio.sleep(self.retry_policy.backoff(task.retry_count + 1))
                task.retry_count += 1
                continue
            except AnalysisCanceled as e:
                return PhaseOutcome(
                    status=OutcomeStatus.CANCELED,
                    phase=task.phase,
                    attempts=attempts,
                    error_message=e.message,
                )
            except PhaseExecutionError as e:
                logger.error(
                    "Phase failed",
                    analysis_id=task.analysis_id,
                    phase=task.phase,
                    error_type=e.error_type.value,
                    error=e.message,
                )
                return self._error(task, attempts, e.error_type, e.message)
            except SQLAlchemyError as e:
                logger.error("Phase database error", analysis_id=task.analysis_id, phase=task.phase, error=str(e))
                return self._error(task, attempts, ErrorType.DATABASE, str(e))
            except Exception as e:
                logger.exception("Unexpected phase error", analysis_id=task.analysis_id, phase=task.phase)
                return self._error(task, attempts, classify_error(e), str(e))

            logger.info("Phase completed", analysis_id=task.analysis_id, phase=task.phase, attempts=attempts)
            return PhaseOutcome(status=OutcomeStatus.COMPLETED, phase=task.phase, attempts=attempts)

    @staticmethod
    def _error(task: PhaseTask, attempts: int, error_type: ErrorType, message: str) -> PhaseOutcome:
        return PhaseOutcome(
            status=OutcomeStatus.ERROR,
            phase=task.phase,
            attempts=attempts,
            error_type=error_type,
            error_message=message,
        )
