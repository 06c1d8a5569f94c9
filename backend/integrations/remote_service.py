"""
Client for remote policy / orchestration services.

The host may delegate decisions (policy checks, orchestrator calls) to
HTTP services. This client gives them one contract: bearer auth, a
request timeout, exponential-backoff retries on transient failures and
a health check.

    client = RemoteServiceClient("https://policy.internal", token="...")
    decision = await client.post("/v1/evaluate", {"input": {...}})
"""

from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from app.config import Settings, get_settings
from core.clock import Clock
from core.exceptions import RemoteServiceError, TransientInfraError
from workflow.retry_strategies import RetryStrategy, execute_with_retry

logger = structlog.get_logger(__name__)


class RemoteServiceClient:
    """JSON-over-HTTP client with retries."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
        health_path: str = "/health",
    ):
        self.settings = settings or get_settings()
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.clock = clock or Clock()
        self.health_path = health_path
        self._client_factory = client_factory
        self.retry_strategy = RetryStrategy.exponential(
            max_retries=self.settings.REMOTE_SERVICE_MAX_RETRIES,
            base_delay=self.settings.REMOTE_SERVICE_RETRY_DELAY,
            max_delay=self.settings.RETRY_MAX_DELAY,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request_once(self, method: str, path: str, payload: Optional[dict]) -> Any:
        try:
            async with self._client_factory(
                base_url=self.base_url,
                timeout=self.settings.REMOTE_SERVICE_TIMEOUT,
            ) as client:
                response = await client.request(method, path, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransientInfraError(f"{method} {self.base_url}{path} failed: {e}")

        if response.status_code in (429, 502, 503, 504):
            raise TransientInfraError(f"{method} {path} returned {response.status_code}")
        if response.status_code >= 400:
            raise RemoteServiceError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        """Send a request, retrying transient failures with backoff."""

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning("Remote service call failed, retrying",
                           base_url=self.base_url, path=path, attempt=attempt, delay=delay, error=str(error))

        return await execute_with_retry(
            self._request_once,
            self.retry_strategy,
            method.upper(),
            path,
            payload,
            on_retry=_on_retry,
            sleep=self.clock.sleep,
        )

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post(self, path: str, payload: Optional[dict] = None) -> Any:
        return await self.request("POST", path, payload)

    async def health_check(self) -> bool:
        """True if the service answers its health endpoint with 2xx."""
        try:
            async with self._client_factory(
                base_url=self.base_url,
                timeout=self.settings.REMOTE_SERVICE_TIMEOUT,
            ) as client:
                response = await client.get(self.health_path, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Remote service health check failed", base_url=self.base_url, error=str(e))
            return False
        return response.is_success
