"""Analysis record and per-phase workflow step models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class AnalysisRecord(SQLModel, table=True):
    """One analysis of one ticker for one user.

    Each phase writes only its own key inside ``agent_insights_json``. The
    record is never deleted here; an external delete is read as a
    cancellation by the workflow.
    """

    __tablename__ = "analysis_records"
    __table_args__ = (
        Index("ix_analysis_records_user_status", "user_id", "status"),
        Index("ix_analysis_records_user_created", "user_id", "created_at"),
    )

    id: str = Field(primary_key=True, max_length=64)
    ticker: str = Field(max_length=20, index=True)
    user_id: str = Field(max_length=64, index=True)
    status: str = Field(default="pending", max_length=20, index=True)  # pending, running, completed, error, canceled
    current_phase: Optional[str] = Field(default=None, max_length=20)

    # Risk-manager verdict
    decision: Optional[str] = Field(default=None, max_length=20)
    confidence: Optional[float] = Field(default=None)

    agent_insights_json: str = Field(default="{}")
    full_analysis_json: str = Field(default="{}")
    messages_json: str = Field(default="[]")

    error_type: Optional[str] = Field(default=None, max_length=20)
    error_message: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: Optional[datetime] = Field(default=None)


class WorkflowStep(SQLModel, table=True):
    """Status of one phase of one analysis."""

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("analysis_id", "phase", name="uq_workflow_step_phase"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    analysis_id: str = Field(max_length=64, index=True)
    phase: str = Field(max_length=20)
    status: str = Field(default="pending", max_length=20)
    attempt: int = Field(default=0)
    error_type: Optional[str] = Field(default=None, max_length=20)
    error_message: Optional[str] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
