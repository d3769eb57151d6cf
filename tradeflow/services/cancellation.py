"""Cooperative cancellation checks against the analysis record."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from ..core.errors import AnalysisCanceled
from .analysis_store import AnalysisRecordService

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CancellationCheck:
    should_continue: bool
    is_canceled: bool = False
    reason: Optional[str] = None


class CancellationGuard:
    """Polled at phase entry and before every AI request, order persist and submission."""

    def __init__(self, store: AnalysisRecordService):
        self.store = store

    async def check(self, analysis_id: str) -> CancellationCheck:
        try:
            record = await self.store.read_analysis(analysis_id)
        except Exception as e:
            # A failed read must not stop an analysis that may still be live
            logger.warning(
                "Cancellation check failed, continuing",
                analysis_id=analysis_id,
                error=str(e),
            )
            return CancellationCheck(should_continue=True, reason=f"Status check failed: {e}")

        if record is None:
            return CancellationCheck(
                should_continue=False,
                is_canceled=True,
                reason="Analysis not found - may have been deleted",
            )
        if record.status == "canceled":
            return CancellationCheck(
                should_continue=False,
                is_canceled=True,
                reason="Analysis was canceled",
            )
        if record.status == "completed":
            return CancellationCheck(should_continue=False, reason="Analysis already completed")
        return CancellationCheck(should_continue=True)

    async def ensure_active(self, analysis_id: str, checkpoint: str = "") -> None:
        """Raise ``AnalysisCanceled`` if processing of ``analysis_id`` must stop."""
        result = await self.check(analysis_id)
        if result.should_continue:
            return
        logger.info(
            "Analysis stopped at checkpoint",
            analysis_id=analysis_id,
            checkpoint=checkpoint,
            reason=result.reason,
        )
        raise AnalysisCanceled(
            result.reason,
            details={"analysis_id": analysis_id, "checkpoint": checkpoint, "canceled": result.is_canceled},
        )
