"""Relay-webhook messaging adapter.

Posts each message to an HTTP relay that fans out to the actual SMS, email
and WhatsApp providers.
"""

from __future__ import annotations

import logging

import httpx

from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import TransientDeliveryFailure
from lead_dispatch.core.models import Channel
from lead_dispatch.messaging.base import Message, MessagingChannel

logger = logging.getLogger(__name__)


class WebhookMessenger(MessagingChannel):
    channel_name = "webhook"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.relay_url = settings.messaging_relay_url
        self.api_key = settings.messaging_api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                headers=headers, timeout=30.0, transport=self._transport
            )
        return self._client

    async def send(self, channel: Channel, destination: str, message: Message) -> bool:
        if not self.relay_url:
            raise TransientDeliveryFailure("Messaging relay URL not configured")

        payload = {
            "channel": channel.value,
            "to": destination,
            "subject": message.subject,
            "content": message.content,
        }

        try:
            resp = await self.client.post(self.relay_url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransientDeliveryFailure(
                f"Relay rejected {channel.value} message: {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise TransientDeliveryFailure(f"Relay connection error: {e}") from e

        data = resp.json() if resp.content else {}
        delivered = bool(data.get("delivered", True))
        if not delivered:
            logger.warning("Relay reported undelivered %s to %s", channel.value, destination)
        return delivered

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
