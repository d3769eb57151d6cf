"""Workflow coordinator: the phase state machine over the task queue.

States: ``pending -> running(phase) -> running(next) | completed | error | canceled``.
Phases run in ``PHASES`` order; each completion enqueues exactly one task
for the next phase, so phases only ever talk through the persisted record.
"""

from __future__ import annotations

from typing import Optional

import structlog

from ..core.errors import AnalysisCanceled, ErrorType, ResourceNotFoundError, ValidationError
from ..schemas.trigger import AnalysisTrigger, ApiSettings, TriggerResponse
from .analysis_store import AnalysisRecordService
from .phase_supervisor import OutcomeStatus, PhaseOutcome
from .task_queue import PHASES, PhaseTask, TaskQueueService

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = ("completed", "canceled")


def next_phase(phase: str) -> Optional[str]:
    """The phase after ``phase``, or None after the last one."""
    index = PHASES.index(phase)
    return PHASES[index + 1] if index + 1 < len(PHASES) else None


class WorkflowCoordinator:
    def __init__(self, store: AnalysisRecordService, queue: TaskQueueService):
        self.store = store
        self.queue = queue

    async def start_analysis(self, trigger: AnalysisTrigger) -> TriggerResponse:
        """Create the record if needed and enqueue its first pending phase.

        An explicit ``trigger.phase`` resumes at that phase.

        Raises:
            ValidationError: Unknown phase, or the analysis was canceled
        """
        ticker = trigger.normalized_ticker()
        if trigger.phase is not None and trigger.phase not in PHASES:
            raise ValidationError(
                f"Unknown phase: {trigger.phase}",
                details={"phase": trigger.phase, "allowed": list(PHASES)},
            )

        record, created = await self.store.create_if_missing(
            trigger.analysis_id,
            ticker=ticker,
            user_id=trigger.user_id,
            context=trigger.analysis_context,
        )

        if record.status == "completed":
            return TriggerResponse(analysis_id=record.id, ticker=record.ticker, status=record.status)
        if record.status == "canceled":
            raise ValidationError(
                f"Analysis {record.id} was canceled",
                details={"analysis_id": record.id},
            )
        if record.status == "running" and trigger.phase is None and not created:
            logger.info("Analysis already running, trigger ignored", analysis_id=record.id)
            return TriggerResponse(
                analysis_id=record.id,
                ticker=record.ticker,
                status=record.status,
                phase=record.current_phase,
            )

        phase = trigger.phase or await self._first_pending_phase(record.id)
        await self.store.update_status(record.id, "running")
        await self.store.append_message(
            record.id,
            agent="workflow",
            message=f"Analysis of {record.ticker} queued at phase {phase}",
        )
        message_id = await self._enqueue(
            analysis_id=record.id,
            phase=phase,
            ticker=record.ticker,
            user_id=record.user_id,
            api_settings=trigger.api_settings,
        )
        logger.info("Analysis started", analysis_id=record.id, ticker=record.ticker, phase=phase, created=created)
        return TriggerResponse(
            analysis_id=record.id,
            ticker=record.ticker,
            status="running",
            phase=phase,
            message_id=message_id,
        )

    async def handle_phase_result(self, task: PhaseTask, outcome: PhaseOutcome) -> None:
        """Persist a supervised phase outcome and advance the workflow."""
        try:
            if outcome.status == OutcomeStatus.COMPLETED:
                await self._on_completed(task, outcome)
            elif outcome.status == OutcomeStatus.CANCELED:
                await self._on_canceled(task, outcome)
            else:
                await self._on_error(task, outcome)
        except AnalysisCanceled as e:
            # The record disappeared between the phase and this write
            logger.info("Phase result dropped", analysis_id=task.analysis_id, phase=task.phase, reason=e.message)

    async def _on_completed(self, task: PhaseTask, outcome: PhaseOutcome) -> None:
        await self.store.set_step_status(task.analysis_id, task.phase, "completed", attempt=task.retry_count + 1)
        upcoming = next_phase(task.phase)
        if upcoming is None:
            await self.store.update_status(task.analysis_id, "completed")
            await self.store.append_message(task.analysis_id, agent="workflow", message="Analysis completed")
            logger.info("Analysis completed", analysis_id=task.analysis_id)
            return

        record = await self.store.read_analysis(task.analysis_id)
        if record is None or record.status in TERMINAL_STATUSES:
            logger.info(
                "Not advancing finished analysis",
                analysis_id=task.analysis_id,
                status=record.status if record else None,
            )
            return

        await self._enqueue(
            analysis_id=task.analysis_id,
            phase=upcoming,
            ticker=task.ticker,
            user_id=task.user_id,
            api_settings=ApiSettings.model_validate(task.api_settings),
        )

    async def _on_canceled(self, task: PhaseTask, outcome: PhaseOutcome) -> None:
        await self.store.set_step_status(task.analysis_id, task.phase, "canceled")
        record = await self.store.read_analysis(task.analysis_id)
        if record is None:
            logger.info("Canceled analysis no longer exists", analysis_id=task.analysis_id)
            return
        if record.status in TERMINAL_STATUSES:
            return
        await self.store.update_status(task.analysis_id, "canceled")
        await self.store.append_message(
            task.analysis_id,
            agent="workflow",
            message=f"Analysis canceled during {task.phase}: {outcome.error_message or 'canceled'}",
            type="warning",
        )

    async def _on_error(self, task: PhaseTask, outcome: PhaseOutcome) -> None:
        error_type = outcome.error_type or ErrorType.OTHER
        await self.store.set_step_status(
            task.analysis_id,
            task.phase,
            "error",
            attempt=task.retry_count + 1,
            error_type=error_type,
            error_message=outcome.error_message,
        )
        await self.store.update_status(
            task.analysis_id,
            "error",
            error_type=error_type,
            error_message=outcome.error_message,
        )
        await self.store.append_message(
            task.analysis_id,
            agent=task.phase,
            message=f"Phase {task.phase} failed ({error_type.value}): {outcome.error_message}",
            type="error",
        )

    async def cancel_analysis(self, analysis_id: str) -> TriggerResponse:
        record = await self.store.read_analysis(analysis_id)
        if record is None:
            raise ResourceNotFoundError(
                f"Analysis {analysis_id} not found",
                details={"analysis_id": analysis_id},
            )
        if record.status == "completed":
            raise ValidationError(
                f"Analysis {analysis_id} already completed",
                details={"analysis_id": analysis_id},
            )
        if record.status != "canceled":
            await self.store.update_status(analysis_id, "canceled")
            await self.store.append_message(
                analysis_id,
                agent="workflow",
                message="Analysis canceled by user",
                type="warning",
            )
            logger.info("Analysis canceled", analysis_id=analysis_id)
        return TriggerResponse(
            analysis_id=analysis_id,
            ticker=record.ticker,
            status="canceled",
            phase=record.current_phase,
        )

    async def retry_analysis(self, analysis_id: str, api_settings: ApiSettings) -> TriggerResponse:
        """Re-enqueue the first non-completed phase of an errored analysis."""
        record = await self.store.read_analysis(analysis_id)
        if record is None:
            raise ResourceNotFoundError(
                f"Analysis {analysis_id} not found",
                details={"analysis_id": analysis_id},
            )
        if record.status != "error":
            raise ValidationError(
                f"Only failed analyses can be retried (status: {record.status})",
                details={"analysis_id": analysis_id, "status": record.status},
            )

        phase = await self._first_pending_phase(analysis_id)
        await self.store.update_status(analysis_id, "running")
        await self.store.append_message(
            analysis_id,
            agent="workflow",
            message=f"Manual retry from phase {phase}",
        )
        message_id = await self._enqueue(
            analysis_id=analysis_id,
            phase=phase,
            ticker=record.ticker,
            user_id=record.user_id,
            api_settings=api_settings,
        )
        logger.info("Analysis retried", analysis_id=analysis_id, phase=phase)
        return TriggerResponse(
            analysis_id=analysis_id,
            ticker=record.ticker,
            status="running",
            phase=phase,
            message_id=message_id,
        )

    async def _first_pending_phase(self, analysis_id: str) -> str:
        completed = {
            step.phase for step in await self.store.get_steps(analysis_id) if step.status == "completed"
        }
        for phase in PHASES:
            if phase not in completed:
                return phase
        return PHASES[-1]

    async def _enqueue(
        self,
        *,
        analysis_id: str,
        phase: str,
        ticker: str,
        user_id: str,
        api_settings: ApiSettings,
    ) -> str:
        await self.store.set_step_status(analysis_id, phase, "pending")
        message_id = await self.queue.enqueue_phase(
            analysis_id=analysis_id,
            phase=phase,
            ticker=ticker,
            user_id=user_id,
            api_settings=api_settings.model_dump(),
        )
        logger.info("Phase enqueued", analysis_id=analysis_id, phase=phase, message_id=message_id)
        return message_id
