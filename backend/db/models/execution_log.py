"""Per-node execution log entries and run events."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import LogLevel, NodeStatus
from db.base import BaseModel


class ExecutionLogEntryRecord(BaseModel):
    """One node attempt within a run.

    Created when the node starts (status running) and updated exactly
    once when it completes or fails.
    """

    __tablename__ = "execution_log_entries"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    node_id: Mapped[str] = mapped_column(nullable=False, index=True)
    node_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    label: Mapped[str] = mapped_column(nullable=False, default="")
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    sequence: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(default=NodeStatus.RUNNING.value, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    execution: Mapped["WorkflowExecutionRecord"] = relationship(
        "WorkflowExecutionRecord", back_populates="log_entries"
    )


class ExecutionEventRecord(BaseModel):
    """Run-level event: queued, run starting, retrying, failed, ..."""

    __tablename__ = "execution_events"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    level: Mapped[str] = mapped_column(default=LogLevel.INFO.value)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    node_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    execution: Mapped["WorkflowExecutionRecord"] = relationship(
        "WorkflowExecutionRecord", back_populates="events"
    )
