"""
Live feed of a widget conversation.

The widget keeps one event stream open per conversation and receives every
agent or bot message stored after it connected (or after the message id it
resumes from). New messages are found by polling the store.
"""

import asyncio
import logging
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from inbox import storage
from inbox.ai import CancellationToken
from inbox.schemas import MessageResponse

logger = logging.getLogger(__name__)

PUSHED_SENDER_TYPES = ("agent", "bot")


class ConversationFeed:
    """
    Args:
        session_factory: Opens a short-lived session for each poll
        poll_seconds: Pause between polls
        heartbeat_seconds: Interval of ``ping`` frames that keep proxies from closing the stream
        max_seconds: The stream ends after this long; the widget reconnects with its last message id
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        poll_seconds: float = 1.0,
        heartbeat_seconds: float = 30.0,
        max_seconds: float = 300.0,
    ):
        self.session_factory = session_factory
        self.poll_seconds = poll_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.max_seconds = max_seconds

    def _latest_id(self, conversation_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            last = storage.get_last_message(db, conversation_id)
            return last.id if last is not None else None
        finally:
            db.close()

    def _poll(self, conversation_id: str, anchor: Optional[str]) -> Tuple[List[dict], Optional[str]]:
        """Frames for messages after `anchor` (all messages when None) and the new anchor."""
        db = self.session_factory()
        try:
            messages = storage.get_messages_by_conversation(db, conversation_id, after_id=anchor)
            frames = [
                {"type": "message", "message": MessageResponse.model_validate(m).model_dump(mode="json")}
                for m in messages
                if m.sender_type in PUSHED_SENDER_TYPES
            ]
            return frames, messages[-1].id if messages else anchor
        finally:
            db.close()

    async def events(
        self,
        conversation_id: str,
        last_message_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[dict]:
        """
        Yields ``connected``, then ``message`` frames in store order and a
        ``ping`` every heartbeat interval, until cancelled or `max_seconds` pass.
        """
        anchor = last_message_id or self._latest_id(conversation_id)

        loop = asyncio.get_running_loop()
        started = last_beat = loop.time()
        yield {"type": "connected", "conversation_id": conversation_id}

        while cancel_token is None or not cancel_token.cancelled:
            frames, anchor = self._poll(conversation_id, anchor)
            for frame in frames:
                yield frame

            now = loop.time()
            if now - last_beat >= self.heartbeat_seconds:
                yield {"type": "ping"}
                last_beat = now
            if now - started >= self.max_seconds:
                logger.debug(f"Conversation feed reached its time limit: {conversation_id}")
                break
            await asyncio.sleep(self.poll_seconds)
