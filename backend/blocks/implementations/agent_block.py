"""Invoke Agent block: send input to an agent's LLM provider."""

import json
from typing import Any, Dict

import structlog

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import ExecutionError
from workflow.context import ExecutionContext
from workflow.models import Node

logger = structlog.get_logger(__name__)


class InvokeAgentBlock(BaseBlock):
    """Run an agent against the first configured LLM provider.

    Config:
        agentId: Agent to run (required)
        input: Prompt string, or any JSON value (serialized)

    Provider failures do not fail the node; they are reported in the
    output's ``error`` field.
    """

    block_type = BlockType.INVOKE_AGENT
    display_name = "Invoke Agent"
    description = "Run an AI agent"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        agent_id = self.require(node, "agentId", "Invoke Agent: agentId is required")
        user_input = node.data.get("input")

        store = self.services.agent_store
        if store is None:
            raise ExecutionError("Agent store not available", "AGENT_STORE_UNAVAILABLE")

        agent = await store.get_agent(str(agent_id))
        if agent is None:
            raise ExecutionError(f"Agent {agent_id} not found", "AGENT_NOT_FOUND")

        base = {
            "agent_id": agent_id,
            "agent_name": agent.name,
            "input": user_input,
        }

        providers = self.services.providers.get_all_providers() if self.services.providers else []
        if not providers:
            return {
                **base,
                "output": "No LLM providers available to execute agent",
                "executed_at": self.clock.now().isoformat(),
            }

        provider = providers[0]
        messages = [
            {"role": "system", "content": agent.effective_system_prompt},
            {
                "role": "user",
                "content": user_input if isinstance(user_input, str) else json.dumps(user_input, default=str),
            },
        ]

        try:
            response = await provider.generate(messages, **agent.config)
        except Exception as e:
            logger.warning("Agent execution failed", agent_id=agent_id, provider=provider.name, error=str(e))
            return {
                **base,
                "output": f"Agent execution failed: {e}",
                "error": str(e),
                "executed_at": self.clock.now().isoformat(),
            }

        return {
            **base,
            "output": response.get("content"),
            "model": response.get("model"),
            "usage": response.get("usage"),
            "executed_at": self.clock.now().isoformat(),
        }
