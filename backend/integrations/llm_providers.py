"""
LLM providers used by the invoke_agent block.

A provider turns a chat transcript into a completion:

    response = await provider.generate([
        {"role": "system", "content": "You are Inventory Bot."},
        {"role": "user", "content": "How many widgets are left?"},
    ])
    response["content"], response["model"], response["usage"]

ProviderRegistry keeps the configured providers in registration order;
the block uses the first one.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog

from app.config import Settings, get_settings
from core.exceptions import ExecutionError, TransientInfraError

logger = structlog.get_logger(__name__)


class LLMProvider(ABC):
    """Chat completion backend."""

    name: str = "base"

    @abstractmethod
    async def generate(self, messages: List[Dict[str, str]], **options: Any) -> Dict[str, Any]:
        """Return ``{"content": str, "model": str, "usage": dict}``."""
        ...


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API over httpx."""

    name = "anthropic"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ):
        self.settings = settings or get_settings()
        self._client_factory = client_factory

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.ANTHROPIC_API_KEY)

    def _build_payload(self, messages: List[Dict[str, str]], **options: Any) -> Dict[str, Any]:
        # The API takes the system prompt as a top-level field
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        chat = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m.get("role") in ("user", "assistant")
        ]
        payload: Dict[str, Any] = {
            "model": options.get("model") or self.settings.CLAUDE_MODEL,
            "max_tokens": options.get("max_tokens") or self.settings.CLAUDE_MAX_TOKENS,
            "messages": chat,
        }
        if system:
            payload["system"] = system
        return payload

    async def generate(self, messages: List[Dict[str, str]], **options: Any) -> Dict[str, Any]:
        if not self.is_configured:
            raise ExecutionError("Anthropic API key not configured", "PROVIDER_NOT_CONFIGURED")

        payload = self._build_payload(messages, **options)
        headers = {
            "x-api-key": self.settings.ANTHROPIC_API_KEY,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

        try:
            async with self._client_factory(
                base_url=self.settings.ANTHROPIC_BASE_URL,
                timeout=float(self.settings.CLAUDE_TIMEOUT),
            ) as client:
                response = await client.post("/v1/messages", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("LLM request timeout", provider=self.name)
            raise TransientInfraError("LLM request timed out")
        except httpx.HTTPError as e:
            logger.warning("LLM request failed", provider=self.name, error=str(e))
            raise TransientInfraError(f"LLM request failed: {e}")

        if response.status_code in (429, 529) or response.status_code >= 500:
            raise TransientInfraError(f"LLM API error {response.status_code}")
        if response.status_code != 200:
            logger.error("LLM API error", status=response.status_code, body=response.text[:500])
            raise ExecutionError(f"LLM API error {response.status_code}: {response.text[:200]}")

        data = response.json()
        content = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage", {})
        return {
            "content": content,
            "model": data.get("model", payload["model"]),
            "usage": {
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            },
        }


class ProviderRegistry:
    """Configured LLM providers, in registration order."""

    def __init__(self):
        self._providers: Dict[str, LLMProvider] = {}

    def register(self, provider: LLMProvider) -> None:
        self._providers[provider.name] = provider
        logger.info("LLM provider registered", provider=provider.name)

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def get(self, name: str) -> Optional[LLMProvider]:
        return self._providers.get(name)

    def get_all_providers(self) -> List[LLMProvider]:
        return list(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)


_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """Get or create the provider registry, registering Anthropic if configured."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
        anthropic = AnthropicProvider()
        if anthropic.is_configured:
            _registry.register(anthropic)
    return _registry
