"""Webhook transport delivering notifications over HTTP, one endpoint per channel."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from wealthauto.config import NotificationSettings
from wealthauto.errors import TransportError
from wealthauto.types import NOTIFICATION_CHANNELS, NotificationChannel

logger = logging.getLogger(__name__)


class WebhookTransport:
    """Posts notification payloads as JSON to the channel's webhook URL.

    URLs come from NOTIFY_<CHANNEL>_WEBHOOK_URL. They are never logged.
    """

    def __init__(
        self,
        settings: Optional[NotificationSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the transport.

        Args:
            settings: Channel URLs and timeout. Defaults to the environment.
            client: Pre-built HTTP client (tests inject one with a mock transport).
        """
        self.settings = settings or NotificationSettings.from_env()
        self._client = client
        self._owns_client = client is None

        missing = [c for c in NOTIFICATION_CHANNELS if c not in self.settings.webhook_urls]
        if missing:
            logger.warning(f"No webhook configured for channels: {', '.join(missing)}")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._client

    def is_configured(self, channel: NotificationChannel) -> bool:
        return channel in self.settings.webhook_urls

    async def send(self, channel: NotificationChannel, recipient: str, payload: Mapping[str, Any]) -> None:
        """Deliver one notification. Raises TransportError on any failure."""
        url = self.settings.webhook_urls.get(channel)
        if not url:
            raise TransportError(f"No webhook configured for {channel}")

        body = {"channel": channel, "recipient": recipient, **payload}
        try:
            client = await self._get_client()
            response = await client.post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(f"{channel} webhook returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{channel} webhook request failed: {exc.__class__.__name__}") from exc

        logger.info(f"{channel} notification delivered to {recipient}")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
