"""
Block Type Registry: central registry for all available block types.

Maps block type keys to their implementations and dispatches node
execution. Editor spellings (``httpRequest``, ``http-request``,
``database-action``...) are normalized before lookup; types nobody
registered are skipped rather than failed.
"""

from typing import Dict, Optional, Type

import structlog

from blocks.base_block import BaseBlock, BlockResult, BlockServices
from blocks.implementations.agent_block import InvokeAgentBlock
from blocks.implementations.code_blocks import ConditionBlock, RunCodeBlock, TransformDataBlock
from blocks.implementations.database_block import DatabaseQueryBlock
from blocks.implementations.delay_block import DelayBlock
from blocks.implementations.http_block import HttpRequestBlock
from blocks.implementations.notification_blocks import SendEmailBlock, SendMessageBlock
from blocks.implementations.triggers import TRIGGER_BLOCK_TYPES
from core.constants import BlockType, normalize_block_type
from core.exceptions import UnknownBlockTypeError
from workflow.context import ExecutionContext
from workflow.models import Node

logger = structlog.get_logger(__name__)

BUILTIN_BLOCK_TYPES: Dict[str, Type[BaseBlock]] = {
    **TRIGGER_BLOCK_TYPES,
    BlockType.HTTP_REQUEST: HttpRequestBlock,
    BlockType.DATABASE_QUERY: DatabaseQueryBlock,
    BlockType.SEND_EMAIL: SendEmailBlock,
    BlockType.SEND_MESSAGE: SendMessageBlock,
    BlockType.INVOKE_AGENT: InvokeAgentBlock,
    BlockType.RUN_CODE: RunCodeBlock,
    BlockType.CONDITION: ConditionBlock,
    BlockType.TRANSFORM_DATA: TransformDataBlock,
    BlockType.DELAY: DelayBlock,
}


class BlockRegistry:
    """Central registry for all block implementations."""

    def __init__(self, services: Optional[BlockServices] = None):
        self.services = services or BlockServices()
        self._blocks: Dict[str, Type[BaseBlock]] = {}
        self._instances: Dict[str, BaseBlock] = {}
        for block_type, block_class in BUILTIN_BLOCK_TYPES.items():
            self.register(block_type, block_class)

    def register(self, block_type: str, block_class: Type[BaseBlock]) -> None:
        """Register (or replace) the implementation for a block type."""
        key = str(getattr(block_type, "value", block_type))
        self._blocks[key] = block_class
        self._instances.pop(key, None)

    def resolve(self, raw_type: Optional[str]) -> Optional[str]:
        """Registry key for a raw node type, or None if nothing handles it."""
        normalized = normalize_block_type(raw_type)
        if normalized is not None and normalized.value in self._blocks:
            return normalized.value
        if raw_type in self._blocks:
            return raw_type
        return None

    def get(self, block_type: str) -> Optional[Type[BaseBlock]]:
        """Get a block class by (raw or canonical) type string."""
        key = self.resolve(block_type)
        return self._blocks.get(key) if key else None

    def create_instance(self, block_type: str) -> BaseBlock:
        """Get the shared instance of a block, creating it on first use.

        Raises:
            UnknownBlockTypeError: Nothing is registered for ``block_type``
        """
        key = self.resolve(block_type)
        if key is None:
            raise UnknownBlockTypeError(block_type)
        if key not in self._instances:
            self._instances[key] = self._blocks[key](self.services)
        return self._instances[key]

    async def execute(self, node: Node, context: ExecutionContext) -> BlockResult:
        """Execute one node. Never raises; failures come back in the result."""
        raw_type = node.block_type
        try:
            block = self.create_instance(raw_type)
        except UnknownBlockTypeError as e:
            logger.warning("Unknown block type, skipping", block_type=raw_type, node_id=node.id)
            return BlockResult(
                success=True,
                skipped=True,
                output={
                    "skipped": True,
                    "reason": e.message,
                    "timestamp": self.services.clock.now().isoformat(),
                },
                timestamp=self.services.clock.now(),
            )
        return await block.run(node, context)

    def list_all(self) -> list:
        """List all registered block types with metadata."""
        return [
            {
                "block_type": block_type,
                "display_name": cls.display_name,
                "description": cls.description,
                "config_schema": cls.get_config_schema(),
            }
            for block_type, cls in self._blocks.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._blocks.keys())
