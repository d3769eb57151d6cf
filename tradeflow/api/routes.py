from __future__ import annotations

import json
from typing import Any, Dict

import pydantic
import structlog
from fastapi import APIRouter, Body, Depends

from ..core.errors import ResourceNotFoundError, ValidationError
from ..repositories import TradeActionRepository
from ..runtime import Runtime
from ..schemas.insights import parse_insights
from ..schemas.trigger import AnalysisTrigger, RetryRequest, TriggerResponse
from .dependencies import get_runtime

router = APIRouter(prefix="/api", tags=["Analysis"])
logger = structlog.get_logger(__name__)

REQUIRED_TRIGGER_FIELDS = ("analysisId", "ticker", "userId", "apiSettings")


def parse_trigger(payload: Dict[str, Any]) -> AnalysisTrigger:
    """Validate a trigger body into an ``AnalysisTrigger``.

    Raises:
        ValidationError: A required key is missing or a field is malformed
    """
    missing = [name for name in REQUIRED_TRIGGER_FIELDS if not payload.get(name)]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    try:
        return AnalysisTrigger.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid analysis trigger",
            details={"errors": json.loads(e.json(include_url=False))},
        ) from e


@router.post("/analysis/trigger", response_model=TriggerResponse)
async def trigger_analysis(
    payload: Dict[str, Any] = Body(...),
    runtime: Runtime = Depends(get_runtime),
):
    trigger = parse_trigger(payload)
    logger.info("Analysis trigger received", analysis_id=trigger.analysis_id, ticker=trigger.ticker, phase=trigger.phase)
    return await runtime.coordinator.start_analysis(trigger)


@router.post("/analysis/{analysis_id}/cancel", response_model=TriggerResponse)
async def cancel_analysis(analysis_id: str, runtime: Runtime = Depends(get_runtime)):
    return await runtime.coordinator.cancel_analysis(analysis_id)


@router.post("/analysis/{analysis_id}/retry", response_model=TriggerResponse)
async def retry_analysis(
    analysis_id: str,
    request: RetryRequest,
    runtime: Runtime = Depends(get_runtime),
):
    return await runtime.coordinator.retry_analysis(analysis_id, request.api_settings)


@router.get("/analysis/{analysis_id}")
async def get_analysis(analysis_id: str, runtime: Runtime = Depends(get_runtime)):
    """Record with parsed insights, audit messages, step states and the order, if any."""
    record = await runtime.store.read_analysis(analysis_id)
    if record is None:
        raise ResourceNotFoundError(
            f"Analysis {analysis_id} not found",
            details={"analysis_id": analysis_id},
        )

    steps = await runtime.store.get_steps(analysis_id)
    async with runtime.db.session_factory() as session:
        order = await TradeActionRepository(session).get_by_analysis_id(analysis_id)

    insights = parse_insights(json.loads(record.agent_insights_json or "{}"))
    return {
        "analysis_id": record.id,
        "ticker": record.ticker,
        "user_id": record.user_id,
        "status": record.status,
        "current_phase": record.current_phase,
        "decision": record.decision,
        "confidence": record.confidence,
        "error_type": record.error_type,
        "error_message": record.error_message,
        "insights": {key: insight.model_dump(mode="json") for key, insight in insights.items()},
        "analysis_context": json.loads(record.full_analysis_json or "{}"),
        "messages": json.loads(record.messages_json or "[]"),
        "steps": [step.model_dump(mode="json") for step in steps],
        "trade_order": order.model_dump(mode="json") if order else None,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


@router.post("/near-limit/scan")
async def run_near_limit_scan(runtime: Runtime = Depends(get_runtime)):
    summary = await runtime.scanner.scan()
    return summary.to_dict()


@router.get("/queue/stats")
async def queue_stats(runtime: Runtime = Depends(get_runtime)):
    return await runtime.queue.get_queue_stats()
