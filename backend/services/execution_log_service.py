"""Execution log sink: runs, per-node log entries and run events.

The engine writes through ExecutionLogStore only. Two stores ship:
InMemoryExecutionLogStore (tests, single-process hosts) and
SqlExecutionLogStore (SQLAlchemy async ORM).

Records passed in are plain dicts; datetimes stay datetimes. Records
read back are JSON-safe dicts (ISO timestamps), with log entries ordered
by start time:

    {
        "id": "exec-...", "workflow_id": ..., "status": "completed", ...,
        "logs": [{"node_id": "A", "status": "completed", "output": ...}],
        "events": [{"level": "info", "message": "Run starting", ...}],
    }
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from core.exceptions import ExecutionNotFoundError
from core.utils import safe_serialize
from db.database import create_session_factory
from db.models import ExecutionEventRecord, ExecutionLogEntryRecord, WorkflowExecutionRecord

logger = structlog.get_logger(__name__)

RUN_FIELDS = (
    "id", "workflow_id", "workflow_name", "status", "priority", "retry_count",
    "max_retries", "created_at", "started_at", "completed_at", "duration_ms",
    "error", "trigger_data",
)
LOG_ENTRY_FIELDS = (
    "id", "execution_id", "node_id", "node_type", "label", "attempt", "sequence", "status",
    "started_at", "completed_at", "duration_ms", "output", "error",
)
EVENT_FIELDS = ("id", "execution_id", "timestamp", "level", "message", "node_id", "data")


def _pick(record: dict, fields: tuple) -> dict:
    return {k: record[k] for k in fields if k in record}


def _as_utc(value: Any) -> Any:
    # SQLite hands timezone-aware columns back naive
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExecutionLogStore(ABC):
    """Persistence contract for run history."""

    @abstractmethod
    async def create_run(self, run: dict) -> None:
        ...

    @abstractmethod
    async def update_run(self, execution_id: str, patch: dict) -> None:
        ...

    @abstractmethod
    async def create_log_entry(self, execution_id: str, entry: dict) -> None:
        ...

    @abstractmethod
    async def update_log_entry(self, execution_id: str, node_id: str, patch: dict) -> None:
        """Update the most recent entry for ``node_id`` in this run."""
        ...

    @abstractmethod
    async def add_event(self, execution_id: str, event: dict) -> None:
        ...

    @abstractmethod
    async def get_run_with_logs(self, execution_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def list_runs(self, workflow_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        ...


class InMemoryExecutionLogStore(ExecutionLogStore):
    """Dict-backed store. Never shared between engine instances."""

    def __init__(self):
        self._runs: dict[str, dict] = {}
        self._logs: dict[str, list[dict]] = {}
        self._events: dict[str, list[dict]] = {}

    def _require(self, execution_id: str) -> dict:
        run = self._runs.get(execution_id)
        if run is None:
            raise ExecutionNotFoundError(execution_id)
        return run

    async def create_run(self, run: dict) -> None:
        record = copy.deepcopy(_pick(run, RUN_FIELDS))
        self._runs[record["id"]] = record
        self._logs[record["id"]] = []
        self._events[record["id"]] = []

    async def update_run(self, execution_id: str, patch: dict) -> None:
        self._require(execution_id).update(copy.deepcopy(_pick(patch, RUN_FIELDS)))

    async def create_log_entry(self, execution_id: str, entry: dict) -> None:
        self._require(execution_id)
        record = copy.deepcopy(_pick(entry, LOG_ENTRY_FIELDS))
        record.setdefault("id", str(uuid4()))
        record["execution_id"] = execution_id
        self._logs[execution_id].append(record)

    async def update_log_entry(self, execution_id: str, node_id: str, patch: dict) -> None:
        self._require(execution_id)
        for record in reversed(self._logs[execution_id]):
            if record["node_id"] == node_id:
                record.update(copy.deepcopy(_pick(patch, LOG_ENTRY_FIELDS)))
                return
        logger.warning("No log entry to update", execution_id=execution_id, node_id=node_id)

    async def add_event(self, execution_id: str, event: dict) -> None:
        self._require(execution_id)
        record = copy.deepcopy(_pick(event, EVENT_FIELDS))
        record.setdefault("id", str(uuid4()))
        record["execution_id"] = execution_id
        self._events[execution_id].append(record)

    async def get_run_with_logs(self, execution_id: str) -> Optional[dict]:
        run = self._runs.get(execution_id)
        if run is None:
            return None
        logs = sorted(self._logs[execution_id], key=lambda r: (r["started_at"], r.get("sequence", 0)))
        result = dict(run, logs=logs, events=list(self._events[execution_id]))
        return safe_serialize(result)

    async def list_runs(self, workflow_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        runs = [
            r for r in self._runs.values()
            if workflow_id is None or r["workflow_id"] == workflow_id
        ]
        runs.sort(key=lambda r: r["created_at"], reverse=True)
        return [safe_serialize(r) for r in runs[:limit]]


class SqlExecutionLogStore(ExecutionLogStore):
    """SQLAlchemy-backed store; one short session per write."""

    def __init__(self, engine: AsyncEngine):
        self._session_factory = create_session_factory(engine)

    @staticmethod
    def _run_to_dict(row: WorkflowExecutionRecord) -> dict:
        return {f: _as_utc(getattr(row, f)) for f in RUN_FIELDS}

    async def create_run(self, run: dict) -> None:
        async with self._session_factory() as session:
            session.add(WorkflowExecutionRecord(**_pick(run, RUN_FIELDS)))
            await session.commit()

    async def update_run(self, execution_id: str, patch: dict) -> None:
        async with self._session_factory() as session:
            row = await session.get(WorkflowExecutionRecord, execution_id)
            if row is None:
                raise ExecutionNotFoundError(execution_id)
            for key, value in _pick(patch, RUN_FIELDS).items():
                setattr(row, key, value)
            await session.commit()

    async def create_log_entry(self, execution_id: str, entry: dict) -> None:
        fields = _pick(entry, LOG_ENTRY_FIELDS)
        fields["execution_id"] = execution_id
        if "output" in fields:
            fields["output"] = safe_serialize(fields["output"])
        async with self._session_factory() as session:
            session.add(ExecutionLogEntryRecord(**fields))
            await session.commit()

    async def update_log_entry(self, execution_id: str, node_id: str, patch: dict) -> None:
        fields = _pick(patch, LOG_ENTRY_FIELDS)
        if "output" in fields:
            fields["output"] = safe_serialize(fields["output"])
        async with self._session_factory() as session:
            row = (await session.execute(
                select(ExecutionLogEntryRecord)
                .where(
                    ExecutionLogEntryRecord.execution_id == execution_id,
                    ExecutionLogEntryRecord.node_id == node_id,
                )
                .order_by(ExecutionLogEntryRecord.sequence.desc())
                .limit(1)
            )).scalar_one_or_none()
            if row is None:
                logger.warning("No log entry to update", execution_id=execution_id, node_id=node_id)
                return
            for key, value in fields.items():
                setattr(row, key, value)
            await session.commit()

    async def add_event(self, execution_id: str, event: dict) -> None:
        fields = _pick(event, EVENT_FIELDS)
        fields["execution_id"] = execution_id
        if "data" in fields:
            fields["data"] = safe_serialize(fields["data"])
        async with self._session_factory() as session:
            session.add(ExecutionEventRecord(**fields))
            await session.commit()

    async def get_run_with_logs(self, execution_id: str) -> Optional[dict]:
        async with self._session_factory() as session:
            row = await session.get(WorkflowExecutionRecord, execution_id)
            if row is None:
                return None
            result = self._run_to_dict(row)
            result["logs"] = [
                {f: _as_utc(getattr(entry, f)) for f in LOG_ENTRY_FIELDS}
                for entry in sorted(row.log_entries, key=lambda e: (_as_utc(e.started_at), e.sequence))
            ]
            result["events"] = [
                {f: _as_utc(getattr(event, f)) for f in EVENT_FIELDS}
                for event in row.events
            ]
        return safe_serialize(result)

    async def list_runs(self, workflow_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        query = select(WorkflowExecutionRecord).order_by(WorkflowExecutionRecord.created_at.desc())
        if workflow_id is not None:
            query = query.where(WorkflowExecutionRecord.workflow_id == workflow_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query.limit(limit))).scalars().all()
            return [safe_serialize(self._run_to_dict(row)) for row in rows]
