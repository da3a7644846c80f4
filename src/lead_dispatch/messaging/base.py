"""Abstract base class for outbound message delivery."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from lead_dispatch.core.models import Channel


class Message(BaseModel):
    """Body of an outbound message. ``subject`` is only used for email."""

    content: str
    subject: str | None = None


class MessagingChannel(ABC):
    """Delivers messages over SMS, email or WhatsApp.

    No deduplication key is passed, so a retried send may be delivered twice.
    """

    channel_name: str = "unknown"

    @abstractmethod
    async def send(self, channel: Channel, destination: str, message: Message) -> bool:
        """Send ``message`` to ``destination``.

        Returns False (or raises TransientDeliveryFailure) when delivery fails.
        """
        ...

    async def close(self) -> None:
        """Clean up any resources (HTTP sessions, etc.)."""
        pass
