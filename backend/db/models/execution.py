"""Workflow execution (run) model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import RunStatus
from db.base import BaseModel


class WorkflowExecutionRecord(BaseModel):
    """One submitted run of a workflow graph.

    Attributes:
        id: Execution id (``exec-...``)
        workflow_id: Id of the submitted workflow definition
        workflow_name: Name at submission time
        status: queued, running, completed, failed or cancelled
        priority: Current queue priority
        retry_count / max_retries: Retry bookkeeping
        started_at / completed_at / duration_ms: Timing of the final attempt
        error: Error message of the failure that ended the run
        trigger_data: Payload the run was submitted with
    """

    __tablename__ = "workflow_executions"

    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    workflow_name: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(default=RunStatus.QUEUED.value, index=True)
    priority: Mapped[int] = mapped_column(default=5)
    retry_count: Mapped[int] = mapped_column(default=0)
    max_retries: Mapped[int] = mapped_column(default=3)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trigger_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    log_entries: Mapped[list["ExecutionLogEntryRecord"]] = relationship(
        "ExecutionLogEntryRecord",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="ExecutionLogEntryRecord.sequence",
        lazy="selectin",
    )
    events: Mapped[list["ExecutionEventRecord"]] = relationship(
        "ExecutionEventRecord",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="ExecutionEventRecord.timestamp",
        lazy="selectin",
    )
