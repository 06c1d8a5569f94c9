"""Delay block: pause the run for a number of milliseconds."""

from typing import Any, Dict

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import ExecutionError
from workflow.context import ExecutionContext
from workflow.models import Node

DEFAULT_DURATION_MS = 1000


class DelayBlock(BaseBlock):
    """Wait ``duration`` milliseconds (default: 1000).

    The wait goes through the engine clock and is capped at
    ``DELAY_MAX_SECONDS``.
    """

    block_type = BlockType.DELAY
    display_name = "Delay"
    description = "Pause the workflow"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        raw = node.data.get("duration", DEFAULT_DURATION_MS)
        try:
            duration_ms = float(DEFAULT_DURATION_MS if raw is None else raw)
        except (TypeError, ValueError):
            raise ExecutionError(f"Delay: invalid duration {raw!r}")
        if duration_ms < 0:
            raise ExecutionError("Delay: duration must not be negative")

        duration_ms = min(duration_ms, self.settings.DELAY_MAX_SECONDS * 1000)
        await self.clock.sleep(duration_ms / 1000)

        return {
            "delayed_ms": int(duration_ms) if duration_ms.is_integer() else duration_ms,
            "delayed_at": self.clock.now().isoformat(),
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "duration": {"type": "number", "minimum": 0, "default": DEFAULT_DURATION_MS},
            },
        }
