"""Run Code, Condition and Transform Data blocks.

All three run user-authored source through the sandbox with the outputs
of earlier nodes bound as ``context``:

    context['fetch_orders']['data']['total'] > 100
"""

from typing import Any, Dict

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import ExecutionError
from workflow import sandbox
from workflow.context import ExecutionContext
from workflow.models import Node

SUPPORTED_LANGUAGES = ("python",)


class RunCodeBlock(BaseBlock):
    """Execute a code body; its ``return`` value becomes the output.

    Config:
        code: Statement body (required)
        language: Only "python" (default)
    """

    block_type = BlockType.RUN_CODE
    display_name = "Run Code"
    description = "Run a sandboxed code snippet"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        code = self.require(node, "code", "Run Code: code is required")
        language = str(node.data.get("language") or "python").lower()
        if language not in SUPPORTED_LANGUAGES:
            raise ExecutionError(f"Run Code: {language} is not supported", "UNSUPPORTED_LANGUAGE")

        result = sandbox.execute(
            code, context.as_dict(), max_iterations=self.settings.SANDBOX_MAX_ITERATIONS,
            max_size=self.settings.SANDBOX_MAX_SIZE,
        )
        return {
            "output": result,
            "executed_at": self.clock.now().isoformat(),
        }


class ConditionBlock(BaseBlock):
    """Evaluate a boolean expression.

    The result is recorded, not acted on: both outcomes complete the node.
    """

    block_type = BlockType.CONDITION
    display_name = "Condition"
    description = "Evaluate a condition"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        condition = self.require(node, "condition", "Condition: condition expression is required")
        result = sandbox.evaluate(
            condition, context.as_dict(), max_iterations=self.settings.SANDBOX_MAX_ITERATIONS,
            max_size=self.settings.SANDBOX_MAX_SIZE,
        )
        return {
            "condition": condition,
            "result": bool(result),
            "evaluated_at": self.clock.now().isoformat(),
        }


class TransformDataBlock(BaseBlock):
    """Evaluate an expression and output its value."""

    block_type = BlockType.TRANSFORM_DATA
    display_name = "Transform Data"
    description = "Reshape data from earlier steps"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        transformation = self.require(node, "transformation", "Transform Data: transformation is required")
        result = sandbox.evaluate(
            transformation, context.as_dict(), max_iterations=self.settings.SANDBOX_MAX_ITERATIONS,
            max_size=self.settings.SANDBOX_MAX_SIZE,
        )
        return {
            "transformed": result,
            "transformed_at": self.clock.now().isoformat(),
        }
