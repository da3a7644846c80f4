"""Message delivery collaborators."""

from lead_dispatch.messaging.base import Message, MessagingChannel
from lead_dispatch.messaging.logging_messenger import LoggingMessenger
from lead_dispatch.messaging.webhook import WebhookMessenger

__all__ = ["Message", "MessagingChannel", "LoggingMessenger", "WebhookMessenger"]
