"""HTTP Request block implementation.

Makes HTTP requests to external APIs/services. The response is returned
whatever its status code; only transport failures fail the node.
"""

import ipaddress
from typing import Any, Dict
from urllib.parse import urlparse

import httpx
import structlog

from blocks.base_block import BaseBlock
from core.constants import BlockType
from core.exceptions import PolicyViolation, TransientInfraError
from workflow.context import ExecutionContext
from workflow.models import Node

logger = structlog.get_logger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback, link-local or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved


def validate_url_safety(url: str, allow_private: bool = False) -> None:
    """Validate a URL before any request is made.

    Blocks non-HTTP(S) schemes, and unless ``allow_private`` is set,
    localhost and literal private/loopback addresses.

    Raises:
        PolicyViolation: If the URL is refused
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise PolicyViolation(
            f"HTTP Request: unsupported scheme '{parsed.scheme}'. Only HTTP and HTTPS allowed."
        )

    hostname = parsed.hostname
    if not hostname:
        raise PolicyViolation("HTTP Request: URL must have a valid hostname")

    if allow_private:
        return

    if hostname.lower() in ("localhost", "localhost.localdomain") or _is_private_ip(hostname):
        raise PolicyViolation(f"HTTP Request: connections to {hostname} are not allowed")


class HttpRequestBlock(BaseBlock):
    """Execute an HTTP request.

    Config:
        url: Target URL (required)
        method: HTTP method (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: Request body; dicts and lists are sent as JSON
        timeout: Request timeout in seconds (default: HTTP_TIMEOUT)
    """

    block_type = BlockType.HTTP_REQUEST
    display_name = "HTTP Request"
    description = "Make HTTP requests to APIs and web services"

    async def execute(self, node: Node, context: ExecutionContext) -> Dict[str, Any]:
        url = self.require(node, "url", "HTTP Request: URL is required")
        validate_url_safety(url, allow_private=self.settings.HTTP_ALLOW_PRIVATE_NETWORKS)

        method = str(node.data.get("method") or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise PolicyViolation(f"HTTP Request: unsupported method {method}")

        headers = dict(node.data.get("headers") or {})
        params = node.data.get("params") or {}
        body = node.data.get("body")
        timeout = float(node.data.get("timeout") or self.settings.HTTP_TIMEOUT)

        kwargs: Dict[str, Any] = {"headers": headers, "params": params}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        try:
            async with self.services.http_client_factory(timeout=timeout) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise TransientInfraError(f"HTTP Request failed: timed out after {timeout}s")
        except httpx.HTTPError as e:
            raise TransientInfraError(f"HTTP Request failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = response.text

        logger.debug("HTTP response received", url=url, status=response.status_code)

        return {
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "headers": dict(response.headers),
            "data": data,
        }

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "description": "Target URL"},
                "method": {"type": "string", "enum": list(ALLOWED_METHODS)},
                "headers": {"type": "object"},
                "params": {"type": "object"},
                "body": {},
                "timeout": {"type": "number"},
            },
        }
