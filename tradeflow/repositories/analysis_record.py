"""Repositories for analysis records and workflow steps."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import desc
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AnalysisRecord, WorkflowStep
from .base import BaseRepository


class AnalysisRecordRepository(BaseRepository[AnalysisRecord]):
    """Repository for AnalysisRecord operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(AnalysisRecord, session)

    async def get_by_id(self, analysis_id: str) -> Optional[AnalysisRecord]:
        return await self.get(analysis_id)

    async def get_by_user_and_status(
        self, user_id: str, statuses: Sequence[str]
    ) -> List[AnalysisRecord]:
        """Get a user's analyses whose status is one of ``statuses``."""
        return await self.list_where(
            AnalysisRecord.user_id == user_id,
            AnalysisRecord.status.in_(list(statuses)),
        )

    async def get_created_since(self, user_id: str, since: datetime) -> List[AnalysisRecord]:
        """Get a user's analyses created at or after ``since``, newest first."""
        return await self.list_where(
            AnalysisRecord.user_id == user_id,
            AnalysisRecord.created_at >= since,
            order_by=desc(AnalysisRecord.created_at),
        )


class WorkflowStepRepository(BaseRepository[WorkflowStep]):
    """Repository for WorkflowStep operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(WorkflowStep, session)

    async def get_step(self, analysis_id: str, phase: str) -> Optional[WorkflowStep]:
        return await self.first_where(WorkflowStep.analysis_id == analysis_id, WorkflowStep.phase == phase)

    async def get_by_analysis(self, analysis_id: str) -> List[WorkflowStep]:
        return await self.list_where(WorkflowStep.analysis_id == analysis_id)
