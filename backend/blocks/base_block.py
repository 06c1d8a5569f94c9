"""
Base block interface for all workflow block implementations.

Every block type (trigger, HTTP request, condition, delay, etc.) inherits
from BaseBlock and implements execute(). execute() returns the node's
output or raises; run() adds timing, logging and error capture.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_settings
from core.clock import Clock
from core.exceptions import ExecutionError
from core.utils import duration_ms
from notifications.notifier import BaseNotifier, LogNotifier
from workflow.context import ExecutionContext
from workflow.models import Node

if TYPE_CHECKING:
    from integrations.agent_store import AgentStore
    from integrations.llm_providers import ProviderRegistry

logger = structlog.get_logger(__name__)


@dataclass
class BlockServices:
    """Collaborators handed to every block instance."""

    settings: Settings = field(default_factory=get_settings)
    clock: Clock = field(default_factory=Clock)
    http_client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient
    db_engine: Optional[AsyncEngine] = None
    notifier: Optional[BaseNotifier] = field(default_factory=LogNotifier)
    agent_store: Optional["AgentStore"] = None
    providers: Optional["ProviderRegistry"] = None


class BlockResult:
    """Standardized result from block execution."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        exception: Optional[BaseException] = None,
        skipped: bool = False,
        duration_ms: int = 0,
        timestamp: Optional[datetime] = None,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.exception = exception
        self.skipped = skipped
        self.duration_ms = duration_ms
        self.timestamp = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class BaseBlock(ABC):
    """
    Abstract base class for all block implementations.

    Subclasses must implement:
    - execute(node, context) -> output
    - block_type (class attribute)
    - display_name (class attribute)
    """

    block_type: str = "base"
    display_name: str = "Base Block"
    description: str = "Abstract base block"

    def __init__(self, services: Optional[BlockServices] = None):
        self.services = services or BlockServices()

    @property
    def settings(self) -> Settings:
        return self.services.settings

    @property
    def clock(self) -> Clock:
        return self.services.clock

    @abstractmethod
    async def execute(self, node: Node, context: ExecutionContext) -> Any:
        """
        Execute the block for one node.

        Args:
            node: The node being executed; its ``data`` is the block config
            context: Outputs of earlier nodes in this run (read-only here)

        Returns:
            The node output, recorded into the context by the engine

        Raises:
            ExecutionError (or a subclass) when the block cannot complete
        """
        pass

    async def run(self, node: Node, context: ExecutionContext) -> BlockResult:
        """
        Run the block with timing and error handling.

        This is the entry point called by the block registry.
        """
        start = self.clock.monotonic()
        log = logger.bind(
            block_type=self.block_type,
            node_id=node.id,
            execution_id=context.execution_id,
        )
        try:
            log.info("Block starting", label=node.label)
            output = await self.execute(node, context)
            duration = duration_ms(start, self.clock.monotonic())
            log.info("Block completed", duration_ms=duration)
            return BlockResult(
                success=True,
                output=output,
                duration_ms=duration,
                timestamp=self.clock.now(),
            )

        except Exception as e:
            duration = duration_ms(start, self.clock.monotonic())
            log.error("Block failed", error=str(e), error_type=type(e).__name__, duration_ms=duration)
            return BlockResult(
                success=False,
                error=str(e),
                exception=e,
                duration_ms=duration,
                timestamp=self.clock.now(),
            )

    @staticmethod
    def require(node: Node, key: str, message: str) -> Any:
        """Return ``node.data[key]`` or raise ExecutionError(message) if empty."""
        value = node.data.get(key)
        if value is None or value == "" or value == {} or value == []:
            raise ExecutionError(message, "MISSING_FIELD")
        return value

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for block configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
