"""Analysis record store: phase, insight, status, message and step writes."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel

from ..core.errors import AnalysisCanceled, ErrorType
from ..db.models import AnalysisRecord, WorkflowStep
from ..db.session import DatabaseManager
from ..repositories import AnalysisRecordRepository, WorkflowStepRepository
from ..schemas.insights import AuditMessage, PhaseInsight, parse_insights

logger = structlog.get_logger(__name__)


def _missing(analysis_id: str) -> AnalysisCanceled:
    return AnalysisCanceled(
        f"Analysis {analysis_id} not found - may have been deleted",
        details={"analysis_id": analysis_id},
    )


class AnalysisRecordService:
    """Reads and writes analysis records, one short session per operation."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def create_if_missing(
        self,
        analysis_id: str,
        *,
        ticker: str,
        user_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[AnalysisRecord, bool]:
        """Create a pending record unless one exists.

        Returns:
            (record, created)
        """
        async with self.db.session_factory() as session:
            repo = AnalysisRecordRepository(session)
            record = await repo.get_by_id(analysis_id)
            if record is not None:
                return record, False

            record = AnalysisRecord(
                id=analysis_id,
                ticker=ticker,
                user_id=user_id,
                status="pending",
                full_analysis_json=json.dumps({"analysis_context": context or {}}, default=str),
            )
            record = await repo.create(record)
            logger.info("Analysis record created", analysis_id=analysis_id, ticker=ticker, user_id=user_id)
            return record, True

    async def read_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        async with self.db.session_factory() as session:
            return await AnalysisRecordRepository(session).get_by_id(analysis_id)

    async def read_insights(self, analysis_id: str) -> Dict[str, PhaseInsight]:
        """Insights keyed by phase, validated into their tagged types."""
        record = await self.read_analysis(analysis_id)
        if record is None:
            raise _missing(analysis_id)
        return parse_insights(json.loads(record.agent_insights_json or "{}"))

    async def read_context(self, analysis_id: str) -> Dict[str, Any]:
        record = await self.read_analysis(analysis_id)
        if record is None:
            raise _missing(analysis_id)
        return json.loads(record.full_analysis_json or "{}")

    async def read_messages(self, analysis_id: str) -> List[AuditMessage]:
        record = await self.read_analysis(analysis_id)
        if record is None:
            raise _missing(analysis_id)
        return [AuditMessage.model_validate(m) for m in json.loads(record.messages_json or "[]")]

    async def _mutate(self, analysis_id: str, **fields: Any) -> AnalysisRecord:
        async with self.db.session_factory() as session:
            repo = AnalysisRecordRepository(session)
            record = await repo.get_by_id(analysis_id)
            if record is None:
                raise _missing(analysis_id)
            return await repo.update(db_obj=record, obj_in=fields)

    async def update_phase(self, analysis_id: str, phase: str, message: Optional[str] = None) -> None:
        """Mark ``phase`` as the running phase and optionally log a message."""
        await self._mutate(analysis_id, current_phase=phase, status="running")
        if message:
            await self.append_message(analysis_id, agent=phase, message=message)

    async def update_insight(self, analysis_id: str, agent_key: str, insight: BaseModel) -> None:
        """Write one phase's insight key, leaving every other key untouched."""
        async with self.db.session_factory() as session:
            repo = AnalysisRecordRepository(session)
            record = await repo.get_by_id(analysis_id)
            if record is None:
                raise _missing(analysis_id)
            insights = json.loads(record.agent_insights_json or "{}")
            insights[agent_key] = insight.model_dump(mode="json")
            await repo.update(
                db_obj=record,
                obj_in={"agent_insights_json": json.dumps(insights)},
            )

    async def update_context(self, analysis_id: str, key: str, value: Any) -> None:
        async with self.db.session_factory() as session:
            repo = AnalysisRecordRepository(session)
            record = await repo.get_by_id(analysis_id)
            if record is None:
                raise _missing(analysis_id)
            context = json.loads(record.full_analysis_json or "{}")
            context[key] = value
            await repo.update(
                db_obj=record,
                obj_in={"full_analysis_json": json.dumps(context, default=str)},
            )

    async def update_decision(self, analysis_id: str, decision: str, confidence: float) -> None:
        await self._mutate(analysis_id, decision=decision, confidence=confidence)

    async def update_status(
        self,
        analysis_id: str,
        status: str,
        *,
        error_type: Optional[ErrorType] = None,
        error_message: Optional[str] = None,
    ) -> None:
        fields: Dict[str, Any] = {"status": status}
        if status == "error":
            fields["error_type"] = (error_type or ErrorType.OTHER).value
            fields["error_message"] = error_message
        elif status in ("running", "completed"):
            fields["error_type"] = None
            fields["error_message"] = None
        await self._mutate(analysis_id, **fields)
        logger.info("Analysis status updated", analysis_id=analysis_id, status=status, error_type=fields.get("error_type"))

    async def append_message(
        self,
        analysis_id: str,
        *,
        agent: str,
        message: str,
        type: str = "info",
    ) -> None:
        """Append to the audit trail."""
        async with self.db.session_factory() as session:
            repo = AnalysisRecordRepository(session)
            record = await repo.get_by_id(analysis_id)
            if record is None:
                raise _missing(analysis_id)
            messages = json.loads(record.messages_json or "[]")
            messages.append(AuditMessage(agent=agent, message=message, type=type).model_dump(mode="json"))
            await repo.update(
                db_obj=record,
                obj_in={"messages_json": json.dumps(messages)},
            )

    async def set_step_status(
        self,
        analysis_id: str,
        phase: str,
        status: str,
        *,
        attempt: Optional[int] = None,
        error_type: Optional[ErrorType] = None,
        error_message: Optional[str] = None,
    ) -> WorkflowStep:
        """Upsert the (analysis, phase) step row."""
        now = datetime.utcnow()
        async with self.db.session_factory() as session:
            repo = WorkflowStepRepository(session)
            step = await repo.get_step(analysis_id, phase)
            fields: Dict[str, Any] = {"status": status}
            if attempt is not None:
                fields["attempt"] = attempt
            if status == "running":
                fields["started_at"] = now
                fields["error_type"] = None
                fields["error_message"] = None
            elif status in ("completed", "error", "canceled"):
                fields["completed_at"] = now
            if error_type is not None:
                fields["error_type"] = error_type.value
                fields["error_message"] = error_message

            if step is None:
                return await repo.create(WorkflowStep(analysis_id=analysis_id, phase=phase, **fields))
            return await repo.update(db_obj=step, obj_in=fields)

    async def get_steps(self, analysis_id: str) -> List[WorkflowStep]:
        async with self.db.session_factory() as session:
            return await WorkflowStepRepository(session).get_by_analysis(analysis_id)
