"""Simulated delivery: logs each message after a bounded delay."""

from __future__ import annotations

import asyncio
import logging

from lead_dispatch.core.config import Settings
from lead_dispatch.core.models import Channel
from lead_dispatch.messaging.base import Message, MessagingChannel

logger = logging.getLogger(__name__)


class LoggingMessenger(MessagingChannel):
    """Stand-in for real providers. Every send succeeds."""

    channel_name = "logging"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self.sent: list[tuple[Channel, str, Message]] = []

    async def send(self, channel: Channel, destination: str, message: Message) -> bool:
        await asyncio.sleep(self.settings.simulated_io_delay_seconds)
        self.sent.append((channel, destination, message))
        logger.info(
            "[%s] -> %s: %s",
            channel.value,
            destination,
            message.subject or message.content[:80],
        )
        return True
