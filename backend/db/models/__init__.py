"""Database models for the workflow execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.agent import Agent
from db.models.execution import WorkflowExecutionRecord
from db.models.execution_log import ExecutionEventRecord, ExecutionLogEntryRecord

__all__ = [
    "Agent",
    "WorkflowExecutionRecord",
    "ExecutionLogEntryRecord",
    "ExecutionEventRecord",
]
