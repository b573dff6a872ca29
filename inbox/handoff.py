"""
Human operator notification when a conversation is handed off.
"""

import logging
from typing import Optional

import httpx

from inbox.config import Settings, settings as default_settings
from inbox.metrics import record_handoff_notification

logger = logging.getLogger(__name__)


class HandoffNotifier:
    """
    Alerts human operators about a handoff.

    Every notification is logged and counted. When HANDOFF_NOTIFY_URL is set
    the alert is also POSTed there as JSON; delivery failures are logged and
    never propagate to the reply path.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Settings = default_settings,
    ):
        self.url = url if url is not None else settings.HANDOFF_NOTIFY_URL
        self.transport = transport
        self.timeout = settings.HANDOFF_NOTIFY_TIMEOUT

    async def notify(
        self,
        conversation_id: str,
        trigger_message: str,
        reason: str,
        source: str = "webhook",
    ) -> bool:
        """
        Returns:
            True when the alert was delivered (or no URL is configured)
        """
        logger.warning(
            f"Conversation {conversation_id} handed off to a human: {reason}",
            extra={"conversation_id": conversation_id, "handoff_source": source},
        )
        record_handoff_notification(source)

        if not self.url:
            return True

        payload = {
            "conversation_id": conversation_id,
            "trigger_message": (trigger_message or "")[:500],
            "reason": reason,
        }
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Handoff notification failed for {conversation_id}: {e}")
            return False
        return True
