"""Tests for the messaging adapters."""

from __future__ import annotations

import json

import httpx
import pytest

from lead_dispatch.core.config import Settings
from lead_dispatch.core.errors import TransientDeliveryFailure
from lead_dispatch.core.models import Channel
from lead_dispatch.messaging import LoggingMessenger, Message, WebhookMessenger


@pytest.fixture
def relay_settings():
    return Settings(
        messaging_relay_url="http://relay.test/send",
        messaging_api_key="relay-key",
        simulated_io_delay_seconds=0,
    )


def _webhook(settings, handler) -> WebhookMessenger:
    return WebhookMessenger(settings, transport=httpx.MockTransport(handler))


class TestLoggingMessenger:
    async def test_every_send_succeeds(self, settings):
        messenger = LoggingMessenger(settings)
        assert await messenger.send(Channel.SMS, "+1555", Message(content="hi"))
        assert messenger.sent[0][:2] == (Channel.SMS, "+1555")


class TestWebhookMessenger:
    async def test_payload(self, relay_settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"delivered": True})

        messenger = _webhook(relay_settings, handler)
        ok = await messenger.send(
            Channel.EMAIL, "ada@example.com", Message(content="Body", subject="Hello")
        )
        await messenger.close()

        assert ok is True
        [request] = seen
        assert request.headers["Authorization"] == "Bearer relay-key"
        assert json.loads(request.content) == {
            "channel": "email",
            "to": "ada@example.com",
            "subject": "Hello",
            "content": "Body",
        }

    async def test_empty_body_counts_as_delivered(self, relay_settings):
        messenger = _webhook(relay_settings, lambda r: httpx.Response(204))
        assert await messenger.send(Channel.SMS, "+1555", Message(content="hi")) is True

    async def test_relay_reports_undelivered(self, relay_settings):
        messenger = _webhook(relay_settings, lambda r: httpx.Response(200, json={"delivered": False}))
        assert await messenger.send(Channel.SMS, "+1555", Message(content="hi")) is False

    async def test_rejected(self, relay_settings):
        messenger = _webhook(relay_settings, lambda r: httpx.Response(500))
        with pytest.raises(TransientDeliveryFailure, match="500"):
            await messenger.send(Channel.WHATSAPP, "+1555", Message(content="hi"))

    async def test_connection_error(self, relay_settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientDeliveryFailure):
            await _webhook(relay_settings, handler).send(Channel.SMS, "+1555", Message(content="hi"))

    async def test_not_configured(self, settings):
        with pytest.raises(TransientDeliveryFailure):
            await WebhookMessenger(settings).send(Channel.SMS, "+1555", Message(content="hi"))
