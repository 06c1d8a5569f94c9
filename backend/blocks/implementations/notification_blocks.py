"""Send Email and Send Message blocks."""

from typing import Any, Dict

import structlog

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import ExecutionError, TransientInfraError
from notifications.notifier import DeliveryResult
from workflow.context import ExecutionContext
from workflow.models import Node

logger = structlog.get_logger(__name__)


class _NotifyingBlock(BaseBlock):

    def _notifier(self):
        if self.services.notifier is None:
            raise ExecutionError(f"{self.display_name}: no notifier configured", "NOTIFIER_UNAVAILABLE")
        return self.services.notifier

    def _check(self, result: DeliveryResult) -> None:
        if not result.success:
            raise TransientInfraError(f"{self.display_name} failed: {result.error}")


class SendEmailBlock(_NotifyingBlock):
    """Send an email through the configured notifier.

    Config:
        to: Recipient address (required)
        subject: Subject line (required)
        body: Message body
    """

    block_type = BlockType.SEND_EMAIL
    display_name = "Send Email"
    description = "Send an email"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        to = node.data.get("to")
        subject = node.data.get("subject")
        if not to or not subject:
            raise ExecutionError("Send Email: 'to' and 'subject' are required", "MISSING_FIELD")

        result = await self._notifier().send_email(
            to, subject, node.data.get("body") or "",
            execution_id=context.execution_id, node_id=node.id,
        )
        self._check(result)

        return {
            "sent": True,
            "to": to,
            "subject": subject,
            "sent_at": self.clock.now().isoformat(),
        }


class SendMessageBlock(_NotifyingBlock):
    """Post a message to a channel.

    Config:
        message: Message text (required)
        channel: Channel name (default: "notification")
    """

    block_type = BlockType.SEND_MESSAGE
    display_name = "Send Message"
    description = "Send a chat or in-app message"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        message = self.require(node, "message", "Send Message: message is required")
        channel = node.data.get("channel") or "notification"

        result = await self._notifier().send_message(
            channel, str(message),
            execution_id=context.execution_id, node_id=node.id,
        )
        self._check(result)

        return {
            "sent": True,
            "channel": channel,
            "message": message,
            "sent_at": self.clock.now().isoformat(),
        }
