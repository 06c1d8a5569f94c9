"""Workflow Execution Engine: queued, retried, logged graph runs.

The engine takes a workflow graph submitted by the editor, validates it,
orders it, and runs it under a global concurrency cap:

    engine = WorkflowEngine(registry, log_store)
    async with engine:
        execution_id = await engine.submit(
            {"name": "Orders", "nodes": [...], "edges": [...]},
            priority=5,
        )
        run = await engine.wait_for(execution_id)

Run lifecycle:

    queued ──dequeue──▶ running ──all nodes ok──▶ completed
      ▲                    │
      └──retry (backoff)───┤ node failed, retries left
                           ├──node failed, no retries──▶ failed
                           └──cancel requested──────────▶ cancelled

Within a run, nodes execute one at a time in topological order. Each
node attempt gets its own log entry; a failing node stops the run and
the remaining nodes are not executed. A retried run starts again from
the first node with a fresh execution context.

The job queue is only touched from synchronous code, and a run is
marked running in the same step that removes it from the queue, so no
run is ever dispatched twice and never more than ``max_concurrent``
runs are running.
"""

import asyncio
import contextlib
import itertools
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Optional, Union

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_settings
from blocks.base_block import BlockResult, BlockServices
from blocks.registry import BlockRegistry
from core.clock import Clock
from core.constants import LogLevel, NodeStatus, RunStatus
from core.exceptions import ExecutionNotFoundError, GraphInvalidError
from core.utils import generate_execution_id
from db.database import close_db, create_db_engine, init_db
from integrations.agent_store import SqlAgentStore
from integrations.llm_providers import get_provider_registry
from services.execution_log_service import (
    ExecutionLogStore,
    InMemoryExecutionLogStore,
    SqlExecutionLogStore,
)
from workflow.context import ExecutionContext
from workflow.job_queue import JobQueue, JobQueueItem
from workflow.models import Node, WorkflowDefinition
from workflow.retry_strategies import RetryStrategy
from workflow.sorter import topological_sort
from workflow.validation import ensure_valid

logger = structlog.get_logger(__name__)


# ─── Run records ───────────────────────────────────────────────


@dataclass
class RunEvent:
    """Run-level event (queued, run starting, retrying, failed...)."""
    timestamp: datetime
    level: LogLevel
    message: str
    node_id: Optional[str] = None
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "node_id": self.node_id,
            "data": self.data,
        }


@dataclass
class ExecutionLogEntry:
    """One node attempt."""
    execution_id: str
    node_id: str
    node_type: Optional[str]
    label: str
    attempt: int
    sequence: int
    started_at: datetime
    status: NodeStatus = NodeStatus.RUNNING
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "label": self.label,
            "attempt": self.attempt,
            "sequence": self.sequence,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error": self.error,
        }


@dataclass
class WorkflowExecution:
    """In-memory state of one submitted run."""
    id: str
    workflow_id: str
    workflow_name: str
    order: list[Node] = field(repr=False)
    priority: int
    max_retries: int
    created_at: datetime
    trigger_data: dict = field(default_factory=dict)
    status: RunStatus = RunStatus.QUEUED
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    events: list[RunEvent] = field(default_factory=list, repr=False)
    cancel_requested: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _entry_counter: Any = field(default_factory=itertools.count, repr=False)

    def next_sequence(self) -> int:
        return next(self._entry_counter)

    def to_record(self) -> dict:
        """Persisted run fields."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "trigger_data": self.trigger_data,
        }

    def to_dict(self) -> dict:
        return {
            **self.to_record(),
            "node_order": [n.id for n in self.order],
            "events": [e.to_dict() for e in self.events],
        }


# ─── Engine ────────────────────────────────────────────────────


class WorkflowEngine:
    """Runs submitted workflow graphs from a priority queue.

    Architecture:
    - A JobQueue holds pending runs; ``_dispatch`` moves ready runs into
      asyncio tasks while fewer than ``max_concurrent`` are running
    - Dispatch happens on submit, when a run task finishes, and on every
      scheduler tick (so deferred retries start once their time comes)
    - Every wait goes through the injected Clock
    - Cancellation is cooperative via ``WorkflowExecution.cancel_requested``
    """

    def __init__(
        self,
        registry: Optional[BlockRegistry] = None,
        log_store: Optional[ExecutionLogStore] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        max_concurrent: Optional[int] = None,
        on_execution_complete: Optional[Callable] = None,
    ):
        self.settings = settings or (registry.services.settings if registry else get_settings())
        self.clock = clock or (registry.services.clock if registry else Clock())
        self.registry = registry or BlockRegistry(
            BlockServices(settings=self.settings, clock=self.clock)
        )
        self.log_store = log_store or InMemoryExecutionLogStore()
        self.max_concurrent = max_concurrent or self.settings.ENGINE_MAX_CONCURRENT
        self._on_execution_complete = on_execution_complete

        self._queue = JobQueue()
        # Live runs only; finished runs move to the bounded _recent cache
        self._executions: dict[str, WorkflowExecution] = {}
        self._recent: OrderedDict[str, dict] = OrderedDict()
        self._running: dict[str, asyncio.Task] = {}
        self._scheduler_task: Optional[asyncio.Task] = None
        self._stopping = False
        # Set by create_workflow_engine; disposed on stop
        self._db_engine: Optional[AsyncEngine] = None

    # ─── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._scheduler_task and not self._scheduler_task.done():
            return
        self._stopping = False
        self._scheduler_task = asyncio.create_task(self._scheduler_loop(), name="workflow-scheduler")
        logger.info("Workflow engine started", max_concurrent=self.max_concurrent)

    async def stop(self, cancel_running: bool = False) -> None:
        """Stop dispatching and wait for running runs to finish.

        Queued runs stay queued. With ``cancel_running`` the running runs
        are asked to stop at their next node boundary.
        """
        self._stopping = True
        if self._scheduler_task:
            self._scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None

        if cancel_running:
            for execution_id in list(self._running):
                execution = self._executions.get(execution_id)
                if execution is not None:
                    execution.cancel_requested = True

        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        if self._db_engine is not None:
            await close_db(self._db_engine)
            self._db_engine = None
        logger.info("Workflow engine stopped", queued=len(self._queue))

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop(cancel_running=exc_type is not None)

    async def _scheduler_loop(self) -> None:
        tick = self.settings.SCHEDULER_TICK_SECONDS
        while not self._stopping:
            self._dispatch()
            await self.clock.sleep(tick)

    # ─── Submission & cancellation ─────────────────────────────

    async def submit(
        self,
        definition: Union[WorkflowDefinition, dict],
        priority: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
        max_retries: Optional[int] = None,
        trigger_data: Optional[dict] = None,
    ) -> str:
        """Validate, order and enqueue a workflow graph.

        Returns:
            The new execution id

        Raises:
            GraphInvalidError: The graph was rejected; nothing was queued
        """
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.model_validate(definition)
            except ValidationError as e:
                raise GraphInvalidError(
                    f"Invalid workflow payload: {e.error_count()} error(s)",
                    code="INVALID_PAYLOAD",
                    errors=e.errors(include_url=False),
                )

        ensure_valid(definition)
        order = topological_sort(definition.nodes, definition.edges)

        now = self.clock.now()
        execution = WorkflowExecution(
            id=generate_execution_id(),
            workflow_id=definition.id,
            workflow_name=definition.name,
            order=order,
            priority=self.settings.DEFAULT_PRIORITY if priority is None else priority,
            max_retries=self.settings.MAX_RETRIES if max_retries is None else max_retries,
            created_at=now,
            trigger_data=dict(trigger_data or {}),
        )
        self._executions[execution.id] = execution

        await self.log_store.create_run(execution.to_record())
        await self._add_event(execution, LogLevel.INFO, "Workflow queued", data={
            "priority": execution.priority,
            "node_count": len(order),
        })

        if execution.status == RunStatus.QUEUED:
            self._queue.push(JobQueueItem(
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                priority=execution.priority,
                enqueued_at=now,
                scheduled_for=scheduled_for,
            ))
            logger.info("Workflow queued", execution_id=execution.id,
                        workflow_id=execution.workflow_id, priority=execution.priority)
            self._dispatch()

        return execution.id

    async def cancel(self, execution_id: str) -> bool:
        """Cancel a queued or running run.

        Returns:
            True if the run was cancelled or will stop at its next node
            boundary, False if it is unknown or already finished
        """
        execution = self._executions.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return False

        removed = self._queue.remove(execution_id)
        if removed is not None or execution_id not in self._running:
            await self._finish(execution, RunStatus.CANCELLED)
            return True

        execution.cancel_requested = True
        await self._add_event(execution, LogLevel.WARN, "Cancellation requested")
        logger.info("Execution marked for cancellation", execution_id=execution_id)
        return True

    # ─── Dispatch ──────────────────────────────────────────────

    def _dispatch(self) -> None:
        """Start ready runs while below the concurrency cap. Never awaits."""
        if self._stopping:
            return
        now = self.clock.now()
        while len(self._running) < self.max_concurrent:
            item = self._queue.pop_ready(now, exclude=self._running)
            if item is None:
                return
            execution = self._executions.get(item.execution_id)
            if execution is None or execution.status != RunStatus.QUEUED:
                continue

            execution.status = RunStatus.RUNNING
            execution.started_at = now
            task = asyncio.create_task(self._run_execution(execution), name=f"run-{execution.id}")
            self._running[execution.id] = task
            task.add_done_callback(partial(self._on_task_done, execution.id))

    def _on_task_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._running.pop(execution_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Run task crashed", execution_id=execution_id, error=str(task.exception()))
        self._dispatch()

    # ─── Run execution ─────────────────────────────────────────

    async def _run_execution(self, execution: WorkflowExecution) -> None:
        try:
            await self._run_attempt(execution)
        except Exception as e:
            logger.error("Execution aborted by engine error", execution_id=execution.id,
                         error=str(e), exc_info=True)
            if not execution.status.is_terminal:
                await self._finish(execution, RunStatus.FAILED, error=f"Engine error: {e}")
            raise

    async def _run_attempt(self, execution: WorkflowExecution) -> None:
        attempt = execution.retry_count
        context = ExecutionContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            trigger_data=dict(execution.trigger_data),
        )
        log = logger.bind(execution_id=execution.id, workflow_id=execution.workflow_id, attempt=attempt)

        await self.log_store.update_run(execution.id, {
            "status": RunStatus.RUNNING.value,
            "started_at": execution.started_at,
            "retry_count": execution.retry_count,
        })
        await self._add_event(
            execution, LogLevel.INFO,
            "Run starting" if attempt == 0 else f"Run starting (attempt {attempt + 1})",
        )
        log.info("Run starting", node_count=len(execution.order))

        for node in execution.order:
            if execution.cancel_requested:
                log.info("Run cancelled", before_node=node.id)
                await self._finish(execution, RunStatus.CANCELLED)
                return

            entry = ExecutionLogEntry(
                execution_id=execution.id,
                node_id=node.id,
                node_type=node.block_type,
                label=node.label,
                attempt=attempt,
                sequence=execution.next_sequence(),
                started_at=self.clock.now(),
            )
            await self.log_store.create_log_entry(execution.id, entry.to_dict())

            result = await self.registry.execute(node, context)

            if result.success:
                if not result.skipped:
                    context.set(node.id, result.output)
                await self.log_store.update_log_entry(execution.id, node.id, {
                    "status": NodeStatus.COMPLETED.value,
                    "completed_at": self.clock.now(),
                    "duration_ms": result.duration_ms,
                    "output": result.output,
                })
                continue

            await self.log_store.update_log_entry(execution.id, node.id, {
                "status": NodeStatus.FAILED.value,
                "completed_at": self.clock.now(),
                "duration_ms": result.duration_ms,
                "error": result.error,
            })
            await self._handle_failure(execution, node, result)
            return

        log.info("Run completed")
        await self._finish(execution, RunStatus.COMPLETED)

    async def _handle_failure(self, execution: WorkflowExecution, node: Node, result: BlockResult) -> None:
        """Re-queue the run with backoff, or mark it failed."""
        await self._add_event(
            execution, LogLevel.ERROR,
            f"Node '{node.label}' failed: {result.error}",
            node_id=node.id,
            data={"code": getattr(result.exception, "code", None)},
        )

        strategy = RetryStrategy.from_settings(self.settings, max_retries=execution.max_retries)
        if execution.cancel_requested or not strategy.should_retry(execution.retry_count, result.exception):
            if execution.cancel_requested:
                await self._finish(execution, RunStatus.CANCELLED)
            else:
                await self._finish(execution, RunStatus.FAILED, error=result.error)
            return

        execution.retry_count += 1
        execution.priority = max(execution.priority, self.settings.RETRY_PRIORITY)
        delay = strategy.compute_delay(execution.retry_count)
        now = self.clock.now()

        await self.log_store.update_run(execution.id, {
            "status": RunStatus.QUEUED.value,
            "retry_count": execution.retry_count,
            "priority": execution.priority,
        })
        await self._add_event(
            execution, LogLevel.WARN,
            f"Retrying workflow (attempt {execution.retry_count}/{execution.max_retries})",
            data={"delay_seconds": delay, "error": result.error},
        )
        logger.warning("Retrying workflow", execution_id=execution.id,
                       retry_count=execution.retry_count, max_retries=execution.max_retries, delay=delay)

        # Cancellation may have arrived while the retry was being recorded
        if execution.cancel_requested:
            await self._finish(execution, RunStatus.CANCELLED)
            return

        execution.status = RunStatus.QUEUED
        self._queue.push(JobQueueItem(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            priority=execution.priority,
            enqueued_at=now,
            scheduled_for=now + timedelta(seconds=delay) if delay > 0 else None,
        ))

    async def _finish(self, execution: WorkflowExecution, status: RunStatus, error: Optional[str] = None) -> None:
        now = self.clock.now()
        execution.status = status
        execution.completed_at = now
        execution.error = error
        if execution.started_at is not None:
            execution.duration_ms = int((now - execution.started_at).total_seconds() * 1000)

        try:
            await self.log_store.update_run(execution.id, {
                "status": status.value,
                "completed_at": execution.completed_at,
                "duration_ms": execution.duration_ms,
                "error": error,
            })
            if status == RunStatus.COMPLETED:
                await self._add_event(execution, LogLevel.INFO, "Workflow completed",
                                      data={"duration_ms": execution.duration_ms})
            elif status == RunStatus.FAILED:
                await self._add_event(execution, LogLevel.ERROR, f"Workflow failed: {error}")
            else:
                await self._add_event(execution, LogLevel.WARN, "Workflow cancelled")
        finally:
            execution.done.set()
            self._retire(execution)

        if self._on_execution_complete:
            result = self._on_execution_complete(execution.to_dict())
            if asyncio.iscoroutine(result):
                await result

    async def _add_event(
        self,
        execution: WorkflowExecution,
        level: LogLevel,
        message: str,
        node_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        event = RunEvent(timestamp=self.clock.now(), level=level, message=message,
                         node_id=node_id, data=data)
        execution.events.append(event)
        await self.log_store.add_event(execution.id, event.to_dict())

    # ─── Queries ───────────────────────────────────────────────

    def _retire(self, execution: WorkflowExecution) -> None:
        """Drop a finished run from the live map, keeping a snapshot in ``_recent``."""
        self._executions.pop(execution.id, None)
        self._recent[execution.id] = execution.to_dict()
        while len(self._recent) > self.settings.ENGINE_FINISHED_RETENTION:
            self._recent.popitem(last=False)

    def _snapshot(self, execution_id: str) -> Optional[dict]:
        execution = self._executions.get(execution_id)
        if execution is not None:
            return execution.to_dict()
        return self._recent.get(execution_id)

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> dict:
        """Wait until the run reaches a terminal status and return it.

        Runs that finished before the call are answered from the recent
        cache, then from the log store.
        """
        execution = self._executions.get(execution_id)
        if execution is None:
            record = self._recent.get(execution_id) or await self.log_store.get_run_with_logs(execution_id)
            if record is None:
                raise ExecutionNotFoundError(execution_id)
            return record

        waiter = execution.done.wait()
        if timeout is None:
            await waiter
        else:
            await asyncio.wait_for(waiter, timeout)
        return execution.to_dict()

    async def join(self) -> None:
        """Wait until every submitted run has finished."""
        while True:
            pending = [e.done.wait() for e in self._executions.values() if not e.done.is_set()]
            if not pending:
                return
            await asyncio.gather(*pending)

    def get_execution(self, execution_id: str) -> dict:
        """Live run, or one of the last ``ENGINE_FINISHED_RETENTION`` finished runs."""
        snapshot = self._snapshot(execution_id)
        if snapshot is None:
            raise ExecutionNotFoundError(execution_id)
        return snapshot

    def list_executions(self, workflow_id: Optional[str] = None) -> list[dict]:
        """Live and recently finished runs, oldest first."""
        runs = [e.to_dict() for e in self._executions.values()] + list(self._recent.values())
        runs = [r for r in runs if workflow_id is None or r["workflow_id"] == workflow_id]
        runs.sort(key=lambda r: r["created_at"])
        return runs

    async def get_run_history(self, execution_id: str) -> Optional[dict]:
        """Persisted run with its per-node log entries and events."""
        return await self.log_store.get_run_with_logs(execution_id)

    async def list_run_history(self, workflow_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        """Persisted runs, newest first, including those no longer held in memory."""
        return await self.log_store.list_runs(workflow_id=workflow_id, limit=limit)

    def get_running_executions(self) -> dict[str, dict]:
        """Status of all running executions."""
        running = {}
        for eid in self._running:
            execution = self._executions.get(eid)
            if execution is None:
                continue
            running[eid] = {
                "workflow_id": execution.workflow_id,
                "retry_count": execution.retry_count,
                "cancel_requested": execution.cancel_requested,
            }
        return running

    def get_queue_status(self) -> dict:
        return {
            "queued": len(self._queue),
            "running": len(self._running),
            "max_concurrent": self.max_concurrent,
            "next_scheduled_at": self._queue.next_scheduled_at(),
            "items": [item.to_dict() for item in self._queue.snapshot()],
        }


# ─── Singleton ─────────────────────────────────────────────────

async def create_workflow_engine(settings: Optional[Settings] = None, **kwargs) -> WorkflowEngine:
    """Build an engine backed by the configured database.

    Creates the tables, then hands blocks the database engine, the SQL
    agent store and the registered LLM providers. Run logs go to the
    same database. The engine disposes of the database engine on stop.
    """
    settings = settings or get_settings()
    db_engine = create_db_engine(settings)
    await init_db(db_engine)

    services = BlockServices(
        settings=settings,
        db_engine=db_engine,
        agent_store=SqlAgentStore(db_engine),
        providers=get_provider_registry(),
    )
    engine = WorkflowEngine(
        registry=BlockRegistry(services),
        log_store=SqlExecutionLogStore(db_engine),
        **kwargs,
    )
    engine._db_engine = db_engine
    logger.info("Workflow engine created", database=db_engine.url.render_as_string(hide_password=True))
    return engine


_engine: Optional[WorkflowEngine] = None


async def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        engine = await create_workflow_engine()
        if _engine is None:
            _engine = engine
        else:
            await close_db(engine._db_engine)
    return _engine
