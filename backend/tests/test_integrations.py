"""Tests for external collaborators: remote services, LLM providers, agents, notifiers."""

import json

import httpx
import pytest

from core.exceptions import ExecutionError, RemoteServiceError, TransientInfraError
from db.database import create_session_factory
from db.models import Agent
from integrations.agent_store import AgentDefinition, InMemoryAgentStore, SqlAgentStore
from integrations.llm_providers import AnthropicProvider, ProviderRegistry
from integrations.remote_service import RemoteServiceClient
from notifications.notifier import LogNotifier, NotificationKind, WebhookNotifier


# ─── Remote service client ───

@pytest.mark.unit
class TestRemoteServiceClient:
    def _client(self, settings, clock, mock_http, handler, token="tok"):
        return RemoteServiceClient(
            "https://policy.example.com/",
            token=token,
            settings=settings,
            clock=clock,
            client_factory=mock_http(handler),
        )

    async def test_post_with_bearer_auth(self, settings, clock, mock_http):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"allow": True})

        client = self._client(settings, clock, mock_http, handler)
        assert await client.post("/v1/evaluate", {"input": {"user": "u1"}}) == {"allow": True}
        assert seen == {
            "url": "https://policy.example.com/v1/evaluate",
            "auth": "Bearer tok",
            "body": {"input": {"user": "u1"}},
        }

    async def test_no_token_no_auth_header(self, settings, clock, mock_http):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, text="ok")

        client = self._client(settings, clock, mock_http, handler, token=None)
        assert await client.get("/status") == "ok"
        assert seen["auth"] is None

    async def test_retries_transient_status_with_backoff(self, settings, clock, mock_http):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        client = self._client(settings, clock, mock_http, handler)
        assert await client.get("/decide") == {"ok": True}
        assert len(calls) == 3
        # 0.5s then 1.0s through the injected clock
        assert clock.monotonic() == 1.5

    async def test_gives_up_after_max_retries(self, settings, clock, mock_http):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(429)

        client = self._client(settings, clock, mock_http, handler)
        with pytest.raises(TransientInfraError):
            await client.get("/decide")
        assert len(calls) == settings.REMOTE_SERVICE_MAX_RETRIES + 1

    async def test_client_error_not_retried(self, settings, clock, mock_http):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404, text="no such policy")

        client = self._client(settings, clock, mock_http, handler)
        with pytest.raises(RemoteServiceError) as exc:
            await client.get("/v1/policies/missing")
        assert exc.value.status_code == 404
        assert "no such policy" in exc.value.message
        assert len(calls) == 1

    async def test_transport_error_retried(self, settings, clock, mock_http):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused")
            return httpx.Response(204)

        client = self._client(settings, clock, mock_http, handler)
        assert await client.post("/v1/notify") is None
        assert len(calls) == 2

    @pytest.mark.parametrize("status, healthy", [(200, True), (500, False)])
    async def test_health_check(self, settings, clock, mock_http, status, healthy):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(status)

        client = self._client(settings, clock, mock_http, handler)
        assert await client.health_check() is healthy
        assert seen["path"] == "/health"

    async def test_health_check_unreachable(self, settings, clock, mock_http):
        def handler(request):
            raise httpx.ConnectError("down")

        client = self._client(settings, clock, mock_http, handler)
        assert await client.health_check() is False


# ─── LLM providers ───

@pytest.mark.unit
class TestAnthropicProvider:
    MESSAGES = [
        {"role": "system", "content": "You count widgets."},
        {"role": "user", "content": "How many?"},
    ]

    async def test_generate(self, settings, mock_http):
        settings.ANTHROPIC_API_KEY = "sk-test"
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("x-api-key")
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "claude-test",
                "content": [{"type": "text", "text": "Twelve"}, {"type": "tool_use", "id": "x"}],
                "usage": {"input_tokens": 9, "output_tokens": 2},
            })

        provider = AnthropicProvider(settings, client_factory=mock_http(handler))
        response = await provider.generate(self.MESSAGES, max_tokens=64)

        assert response == {
            "content": "Twelve",
            "model": "claude-test",
            "usage": {"input_tokens": 9, "output_tokens": 2},
        }
        assert seen["path"] == "/v1/messages"
        assert seen["key"] == "sk-test"
        assert seen["payload"]["system"] == "You count widgets."
        assert seen["payload"]["messages"] == [{"role": "user", "content": "How many?"}]
        assert seen["payload"]["max_tokens"] == 64
        assert seen["payload"]["model"] == settings.CLAUDE_MODEL

    async def test_not_configured(self, settings):
        provider = AnthropicProvider(settings)
        assert provider.is_configured is False
        with pytest.raises(ExecutionError) as exc:
            await provider.generate(self.MESSAGES)
        assert exc.value.code == "PROVIDER_NOT_CONFIGURED"

    @pytest.mark.parametrize("status", [429, 529, 503])
    async def test_transient_statuses(self, settings, mock_http, status):
        settings.ANTHROPIC_API_KEY = "sk-test"
        provider = AnthropicProvider(settings, client_factory=mock_http(lambda r: httpx.Response(status)))
        with pytest.raises(TransientInfraError):
            await provider.generate(self.MESSAGES)

    async def test_client_error(self, settings, mock_http):
        settings.ANTHROPIC_API_KEY = "sk-test"
        provider = AnthropicProvider(
            settings, client_factory=mock_http(lambda r: httpx.Response(400, text="bad request")),
        )
        with pytest.raises(ExecutionError) as exc:
            await provider.generate(self.MESSAGES)
        assert not isinstance(exc.value, TransientInfraError)
        assert "400" in exc.value.message


@pytest.mark.unit
class TestProviderRegistry:
    def test_register_in_order(self, settings):
        registry = ProviderRegistry()
        first = AnthropicProvider(settings)
        registry.register(first)
        assert len(registry) == 1
        assert registry.get("anthropic") is first
        assert registry.get_all_providers() == [first]

        registry.unregister("anthropic")
        assert len(registry) == 0
        assert registry.get("anthropic") is None


# ─── Agent stores ───

@pytest.mark.unit
class TestAgentStores:
    async def test_in_memory(self):
        store = InMemoryAgentStore()
        store.add(AgentDefinition(id="a1", name="Helper"))
        agent = await store.get_agent("a1")
        assert agent.effective_system_prompt == "You are Helper."
        assert await store.get_agent("a2") is None

    @pytest.mark.integration
    async def test_sql(self, db_engine):
        session_factory = create_session_factory(db_engine)
        async with session_factory() as session:
            session.add(Agent(id="a1", name="Stock Bot", system_prompt="Count stock.", config={"max_tokens": 50}))
            await session.commit()

        store = SqlAgentStore(db_engine)
        agent = await store.get_agent("a1")
        assert agent == AgentDefinition(
            id="a1", name="Stock Bot", system_prompt="Count stock.", config={"max_tokens": 50},
        )
        assert await store.get_agent("missing") is None


# ─── Notifiers ───

@pytest.mark.unit
class TestNotifiers:
    async def test_log_notifier_records(self):
        notifier = LogNotifier()
        result = await notifier.send_message("ops", "deploy done", execution_id="exec-1")
        assert result.success
        assert result.recipient == "ops"
        assert notifier.sent[0].kind == NotificationKind.MESSAGE
        assert notifier.sent[0].metadata == {"execution_id": "exec-1"}

    async def test_log_notifier_keeps_recent_history_only(self):
        notifier = LogNotifier(history_size=3)
        for i in range(10):
            await notifier.send_message("ops", f"message {i}")
        assert [n.message for n in notifier.sent] == ["message 7", "message 8", "message 9"]

    async def test_webhook_notifier_posts_json(self, mock_http):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["payload"] = json.loads(request.content)
            seen["token"] = request.headers.get("x-token")
            return httpx.Response(202)

        notifier = WebhookNotifier(
            "https://hooks.example.com/notify",
            headers={"X-Token": "secret"},
            client_factory=mock_http(handler),
        )
        result = await notifier.send_email("ops@example.com", "Low stock", "Reorder bolts")

        assert result.success
        assert seen["url"] == "https://hooks.example.com/notify"
        assert seen["token"] == "secret"
        assert seen["payload"]["kind"] == "email"
        assert seen["payload"]["recipient"] == "ops@example.com"
        assert seen["payload"]["subject"] == "Low stock"
        assert seen["payload"]["message"] == "Reorder bolts"

    async def test_webhook_notifier_failure(self, mock_http):
        notifier = WebhookNotifier(
            "https://hooks.example.com/notify",
            client_factory=mock_http(lambda r: httpx.Response(500)),
        )
        result = await notifier.send_message("ops", "hello")
        assert not result.success
        assert result.error
