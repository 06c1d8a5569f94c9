"""Trigger blocks: time (and file upload) triggers and webhook triggers."""

from typing import Any, Dict

import structlog

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import ExecutionError
from workflow.context import ExecutionContext
from workflow.models import Node

logger = structlog.get_logger(__name__)


class TimeTriggerBlock(BaseBlock):
    """Start of a scheduled workflow.

    Config:
        delay: Seconds to wait before continuing (default: 0, capped at
            DELAY_MAX_SECONDS)
        payload: Optional static payload; defaults to the run's trigger data
    """

    block_type = BlockType.TIME_TRIGGER
    display_name = "Time Trigger"
    description = "Start the workflow, optionally after a delay"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        try:
            delay = float(node.data.get("delay") or 0)
        except (TypeError, ValueError):
            raise ExecutionError(f"Time Trigger: invalid delay {node.data.get('delay')!r}")
        if delay < 0:
            raise ExecutionError("Time Trigger: delay must not be negative")

        delay = min(delay, self.settings.DELAY_MAX_SECONDS)
        if delay > 0:
            await self.clock.sleep(delay)

        return {
            "triggered_at": self.clock.now().isoformat(),
            "delay": delay,
            "payload": node.data.get("payload", context.trigger_data),
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "delay": {"type": "number", "minimum": 0, "description": "Seconds"},
            },
        }


class WebhookTriggerBlock(BaseBlock):
    """Start of a webhook-driven workflow.

    The payload comes from ``data.webhookPayload`` when the node carries
    one (manual runs), otherwise from the run's trigger data.
    """

    block_type = BlockType.WEBHOOK_TRIGGER
    display_name = "Webhook Trigger"
    description = "Start the workflow from an incoming HTTP request"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        payload = node.data.get("webhookPayload") or context.trigger_data.get("webhookPayload") \
            or context.trigger_data or {}
        if not isinstance(payload, dict):
            payload = {"body": payload}

        return {
            "method": payload.get("method") or "POST",
            "headers": payload.get("headers") or {},
            "body": payload.get("body") or {},
            "received_at": self.clock.now().isoformat(),
        }


TRIGGER_BLOCK_TYPES = {
    BlockType.TIME_TRIGGER: TimeTriggerBlock,
    BlockType.WEBHOOK_TRIGGER: WebhookTriggerBlock,
}
