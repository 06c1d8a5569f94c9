"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Test settings and a ManualClock (no real sleeping anywhere)
- Block services, block registry, in-memory log store and engine
- In-memory async SQLite database
- Graph builders and an httpx MockTransport client factory
- A "gate" block that parks runs until released
"""

import asyncio
import os
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from blocks.base_block import BaseBlock, BlockServices  # noqa: E402
from blocks.registry import BlockRegistry  # noqa: E402
from core.clock import ManualClock  # noqa: E402
from db.base import Base  # noqa: E402
from integrations.agent_store import AgentDefinition, InMemoryAgentStore  # noqa: E402
from integrations.llm_providers import ProviderRegistry  # noqa: E402
from notifications.notifier import LogNotifier  # noqa: E402
from services.execution_log_service import InMemoryExecutionLogStore  # noqa: E402
from workflow.context import ExecutionContext  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.models import Edge, Node, WorkflowDefinition  # noqa: E402


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ANTHROPIC_API_KEY="",
        RETRY_BASE_DELAY=1.0,
        RETRY_MAX_DELAY=60.0,
        RETRY_JITTER=False,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def agent_store() -> InMemoryAgentStore:
    return InMemoryAgentStore([
        AgentDefinition(id="agent-1", name="Inventory Bot", system_prompt="You count widgets."),
        AgentDefinition(id="agent-2", name="Greeter"),
    ])


@pytest.fixture
def providers() -> ProviderRegistry:
    return ProviderRegistry()


@pytest.fixture
def services(settings, clock, notifier, agent_store, providers) -> BlockServices:
    return BlockServices(
        settings=settings,
        clock=clock,
        notifier=notifier,
        agent_store=agent_store,
        providers=providers,
    )


@pytest.fixture
def registry(services) -> BlockRegistry:
    return BlockRegistry(services)


@pytest.fixture
def log_store() -> InMemoryExecutionLogStore:
    return InMemoryExecutionLogStore()


@pytest_asyncio.fixture
async def engine(registry, log_store):
    """Engine with the scheduler loop NOT started; tests start it when needed."""
    workflow_engine = WorkflowEngine(registry=registry, log_store=log_store)
    yield workflow_engine
    await workflow_engine.stop(cancel_running=True)


@pytest.fixture
def make_context() -> Callable[..., ExecutionContext]:
    def _make(outputs: dict = None, trigger_data: dict = None) -> ExecutionContext:
        ctx = ExecutionContext(
            execution_id="exec-test",
            workflow_id="wf-test",
            trigger_data=trigger_data or {},
        )
        for node_id, value in (outputs or {}).items():
            ctx.set(node_id, value)
        return ctx
    return _make


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory SQLite database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


# ---------------------------------------------------------------------------
# Graph builders
# ---------------------------------------------------------------------------

def _node(node_id: str, block_type: str = None, **data: Any) -> Node:
    data.setdefault("label", node_id)
    return Node(id=node_id, type=block_type, data=data)


def _workflow(nodes: list, edges: list = (), name: str = "Test workflow") -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        nodes=nodes,
        edges=[Edge(source=s, target=t) for s, t in edges],
    )


@pytest.fixture
def node():
    """Build a node: node("A", "run_code", code="return 5")."""
    return _node


@pytest.fixture
def workflow():
    """Build a definition: workflow([node_a, node_b], [("A", "B")])."""
    return _workflow


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_http():
    """Return a client factory whose requests go to ``handler``."""
    def _factory_for(handler: Callable[[httpx.Request], httpx.Response]):
        transport = httpx.MockTransport(handler)

        def factory(**kwargs) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=transport, **kwargs)

        return factory
    return _factory_for


# ---------------------------------------------------------------------------
# Scheduling helpers
# ---------------------------------------------------------------------------

class GateState:
    """Shared state of the gate block registered for one test."""

    def __init__(self):
        self.release = asyncio.Event()
        self.entered = 0
        self.active = 0
        self.peak = 0


@pytest.fixture
def gate(registry) -> GateState:
    """Register a ``gate`` block that waits until ``gate.release`` is set."""
    state = GateState()

    class GateBlock(BaseBlock):
        block_type = "gate"
        display_name = "Gate"

        async def execute(self, node, context):
            state.entered += 1
            state.active += 1
            state.peak = max(state.peak, state.active)
            try:
                await state.release.wait()
            finally:
                state.active -= 1
            return {"passed": node.id}

    registry.register("gate", GateBlock)
    return state


@pytest.fixture
def wait_until():
    """Yield to the event loop until ``predicate()`` holds."""
    async def _wait(predicate: Callable[[], bool], max_spins: int = 1000) -> None:
        for _ in range(max_spins):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError("condition not reached")
    return _wait
