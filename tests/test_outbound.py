"""
Tests for delivering replies through the provider send APIs.
"""

import json

import pytest

from inbox.outbound import OutboundSendError
from inbox.schemas import ChannelConfig

WHATSAPP_SEND = "https://graph.facebook.com/v20.0/pn-1/messages"
MESSENGER_SEND = "https://graph.facebook.com/v20.0/me/messages"
INSTAGRAM_SEND = "https://graph.instagram.com/v22.0/ig-1/messages"


class TestOutboundSender:
    @pytest.mark.asyncio
    async def test_whatsapp_cloud_api(self, sender, graph_routes, graph_requests):
        graph_routes[WHATSAPP_SEND] = (200, {"messages": [{"id": "wamid.OUT"}]})
        config = ChannelConfig(access_token="wa-token", phone_number_id="pn-1")

        external_id = await sender.send_text("whatsapp", config, "15550001", "Hi there")

        assert external_id == "wamid.OUT"
        request = graph_requests[-1]
        assert request.headers["authorization"] == "Bearer wa-token"
        assert json.loads(request.content) == {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": "15550001",
            "type": "text",
            "text": {"body": "Hi there"},
        }

    @pytest.mark.asyncio
    async def test_messenger_send_api(self, sender, graph_routes, graph_requests):
        graph_routes[MESSENGER_SEND] = (200, {"recipient_id": "psid-7", "message_id": "m_out"})
        config = ChannelConfig(access_token="page-token")

        external_id = await sender.send_text("facebook", config, "psid-7", "Hello")

        assert external_id == "m_out"
        request = graph_requests[-1]
        assert request.url.params["access_token"] == "page-token"
        assert json.loads(request.content) == {
            "recipient": {"id": "psid-7"},
            "message": {"text": "Hello"},
            "messaging_type": "RESPONSE",
        }

    @pytest.mark.asyncio
    async def test_instagram_uses_business_account(self, sender, graph_routes, graph_requests):
        graph_routes[INSTAGRAM_SEND] = (200, {"recipient_id": "igsid-1", "message_id": "ig_out"})
        config = ChannelConfig(access_token="ig-token", business_account_id="ig-1")

        assert await sender.send_text("instagram", config, "igsid-1", "Hello") == "ig_out"
        assert graph_requests[-1].url.params["access_token"] == "ig-token"

    @pytest.mark.asyncio
    async def test_channel_without_send_api_is_skipped(self, sender, graph_requests):
        result = await sender.send_text("tiktok", ChannelConfig(access_token="tt"), "999", "Hello")

        assert result is None
        assert graph_requests == []

    @pytest.mark.asyncio
    async def test_missing_access_token_raises(self, sender, graph_requests):
        with pytest.raises(OutboundSendError):
            await sender.send_text("facebook", ChannelConfig(), "psid-7", "Hello")
        assert graph_requests == []

    @pytest.mark.asyncio
    async def test_whatsapp_needs_phone_number_id(self, sender, graph_requests):
        with pytest.raises(OutboundSendError):
            await sender.send_text("whatsapp", ChannelConfig(access_token="wa-token"), "15550001", "Hi")
        assert graph_requests == []

    @pytest.mark.asyncio
    async def test_rejected_send_raises(self, sender, graph_routes):
        graph_routes[MESSENGER_SEND] = (400, {"error": {"message": "outside the allowed window"}})

        with pytest.raises(OutboundSendError):
            await sender.send_text("facebook", ChannelConfig(access_token="page-token"), "psid-7", "Hello")
