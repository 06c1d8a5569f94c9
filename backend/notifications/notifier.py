"""Notification delivery for the send_email and send_message blocks.

The engine only needs "deliver this and tell me if it worked". Real
transports (SMTP, chat, push) live in the host; two notifiers ship here:
LogNotifier records deliveries in memory and logs them, WebhookNotifier
POSTs them to an HTTP endpoint.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    EMAIL = "email"
    MESSAGE = "message"


@dataclass
class Notification:
    """A notification to be delivered."""
    kind: NotificationKind
    recipient: str  # email address or channel name
    message: str
    subject: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    recipient: str
    error: Optional[str] = None
    delivered_at: Optional[str] = None


class BaseNotifier(ABC):
    """Abstract notification transport."""

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        ...

    async def send_email(self, to: str, subject: str, body: str = "", **metadata) -> DeliveryResult:
        return await self.send(Notification(
            kind=NotificationKind.EMAIL,
            recipient=to,
            subject=subject,
            message=body,
            metadata=metadata,
        ))

    async def send_message(self, channel: str, message: str, **metadata) -> DeliveryResult:
        return await self.send(Notification(
            kind=NotificationKind.MESSAGE,
            recipient=channel,
            message=message,
            metadata=metadata,
        ))


class LogNotifier(BaseNotifier):
    """Logs every notification and keeps the most recent ones in ``sent``."""

    def __init__(self, history_size: int = 100):
        self.sent: deque[Notification] = deque(maxlen=history_size)

    async def send(self, notification: Notification) -> DeliveryResult:
        self.sent.append(notification)
        logger.info(
            f"Notification ({notification.kind.value}) to {notification.recipient}: "
            f"{notification.subject or notification.message[:80]}"
        )
        return DeliveryResult(
            success=True,
            recipient=notification.recipient,
            delivered_at=datetime.now(timezone.utc).isoformat(),
        )


class WebhookNotifier(BaseNotifier):
    """POST notifications as JSON to a single endpoint."""

    def __init__(
        self,
        url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 15.0,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client_factory = client_factory

    async def send(self, notification: Notification) -> DeliveryResult:
        payload = {
            "kind": notification.kind.value,
            "recipient": notification.recipient,
            "subject": notification.subject,
            "message": notification.message,
            "metadata": notification.metadata,
            "timestamp": notification.created_at,
        }
        headers = {"Content-Type": "application/json", **self.headers}
        try:
            async with self._client_factory(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook notification to {self.url} failed: {e}")
            return DeliveryResult(success=False, recipient=notification.recipient, error=str(e))

        return DeliveryResult(
            success=True,
            recipient=notification.recipient,
            delivered_at=datetime.now(timezone.utc).isoformat(),
        )
