"""
Delivery of stored replies back to the provider channel.

WhatsApp goes through the Cloud API, Facebook and Instagram through the
Send API of their Graph hosts. TikTok has no send endpoint here, so its
replies stay in the inbox only.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from inbox.config import Settings, settings as default_settings
from inbox.metrics import record_outbound_message
from inbox.schemas import ChannelConfig

logger = logging.getLogger(__name__)


class OutboundSendError(Exception):
    """Raised when a reply cannot be delivered to the provider."""


@dataclass
class SendRequest:
    url: str
    payload: dict
    headers: dict
    params: dict


class OutboundSender:
    """
    Sends text replies through the provider APIs.

    Args:
        transport: Optional httpx transport (tests pass an httpx.MockTransport)
        settings: Application settings
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Settings = default_settings,
    ):
        self.transport = transport
        self.settings = settings
        self.builders: Dict[str, Callable[[ChannelConfig, str, str], SendRequest]] = {
            "whatsapp": self._whatsapp,
            "facebook": self._messenger,
            "instagram": self._instagram,
        }

    def _whatsapp(self, config: ChannelConfig, recipient_id: str, text: str) -> SendRequest:
        if not config.phone_number_id:
            raise OutboundSendError("WhatsApp channel has no phone_number_id configured")
        return SendRequest(
            url=f"{self.settings.WHATSAPP_GRAPH_API_URL.rstrip('/')}/{config.phone_number_id}/messages",
            payload={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient_id,
                "type": "text",
                "text": {"body": text},
            },
            headers={"Authorization": f"Bearer {config.access_token}"},
            params={},
        )

    def _messenger(self, config: ChannelConfig, recipient_id: str, text: str) -> SendRequest:
        return SendRequest(
            url=f"{self.settings.META_GRAPH_API_URL.rstrip('/')}/me/messages",
            payload={
                "recipient": {"id": recipient_id},
                "message": {"text": text},
                "messaging_type": "RESPONSE",
            },
            headers={},
            params={"access_token": config.access_token},
        )

    def _instagram(self, config: ChannelConfig, recipient_id: str, text: str) -> SendRequest:
        account = config.business_account_id or "me"
        return SendRequest(
            url=f"{self.settings.INSTAGRAM_GRAPH_API_URL.rstrip('/')}/{account}/messages",
            payload={"recipient": {"id": recipient_id}, "message": {"text": text}},
            headers={},
            params={"access_token": config.access_token},
        )

    @staticmethod
    def _provider_message_id(data: dict) -> Optional[str]:
        # WhatsApp: {"messages": [{"id": ...}]}; Send API: {"message_id": ...}
        messages = data.get("messages")
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            return messages[0].get("id")
        return data.get("message_id")

    async def send_text(
        self, channel_type: str, config: ChannelConfig, recipient_id: str, text: str
    ) -> Optional[str]:
        """
        Deliver one text reply.

        Returns:
            The provider's message id, or None for channel types without an outbound API

        Raises:
            OutboundSendError: missing credentials or the provider rejected the call
        """
        builder = self.builders.get(channel_type)
        if builder is None:
            logger.info(f"No outbound API for {channel_type}, reply kept in the inbox only")
            record_outbound_message(channel_type, "unsupported")
            return None

        try:
            if not config.access_token:
                raise OutboundSendError(f"{channel_type} channel has no access_token configured")
            request = builder(config, recipient_id, text)
        except OutboundSendError:
            record_outbound_message(channel_type, "failed")
            raise

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.settings.OUTBOUND_TIMEOUT) as client:
                response = await client.post(
                    request.url, json=request.payload, headers=request.headers, params=request.params
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            record_outbound_message(channel_type, "failed")
            raise OutboundSendError(f"{channel_type} send to {recipient_id} failed: {e}") from e

        external_id = self._provider_message_id(data) if isinstance(data, dict) else None
        record_outbound_message(channel_type, "sent")
        logger.info(f"Reply delivered: provider={channel_type}, recipient={recipient_id}, external_id={external_id}")
        return external_id
