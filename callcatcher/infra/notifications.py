"""
Notification webhook client.

Posts "booked" and "follow_up" events to an external receiver that renders
and delivers customer / owner messages. Delivery is fire-and-forget: a
failed notification is logged and never affects a committed booking.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from callcatcher.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    """Payload sent to the notification receiver."""

    event: str  # "booked" | "follow_up"
    business_id: str
    call_id: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    appointment_id: Optional[str] = None
    service_name: Optional[str] = None
    start_time: Optional[str] = None  # ISO-8601 UTC
    reason: Optional[str] = None
    occurred_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, dropping empty fields."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


class NotificationService:
    """Sends booking lifecycle events to the configured webhook."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        """Initialize notification service.

        Args:
            webhook_url: Receiver URL (defaults to settings; None disables delivery)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout = timeout or settings.notification_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, event: NotificationEvent) -> bool:
        """Deliver one event.

        Returns:
            True if the receiver accepted it
        """
        if not self.webhook_url:
            logger.debug(f"Notification webhook not configured, dropping {event.event}")
            return False

        client = await self._get_client()
        try:
            response = await client.post(self.webhook_url, json=event.to_dict())
            response.raise_for_status()
            logger.info(f"Notification sent: {event.event} for call {event.call_id}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Notification {event.event} for call {event.call_id} failed: {e}")
            return False

    def dispatch(self, event: NotificationEvent) -> None:
        """Schedule delivery without waiting for it."""
        task = asyncio.create_task(self.send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Close HTTP client."""
        await self.drain()
        if self._client:
            await self._client.aclose()
            self._client = None


# Singleton
_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get singleton NotificationService."""
    global _service
    if _service is None:
        _service = NotificationService()
    return _service
