"""
AI auto-reply orchestration.

For one inbound user message the orchestrator decides whether to answer,
builds the model context, runs the model (blocking or streaming) and
persists exactly one assistant message: the reply, the handoff notice or
the fallback message.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from sqlalchemy.orm import Session

from inbox import storage
from inbox.ai import HANDOFF_MARKER, AIService, CancellationToken, strip_handoff_marker
from inbox.config import Settings, settings as default_settings
from inbox.handoff import HandoffNotifier
from inbox.knowledge import KnowledgeBase, format_context
from inbox.metrics import record_ai_reply
from inbox.schemas import AIConfig, ChannelConfig

logger = logging.getLogger(__name__)

# Skip reasons, in the order they are checked
AI_DISABLED = "ai_disabled"
AGENT_ONLY_MODE = "agent_only_mode"
CONVERSATION_IN_HANDOFF = "conversation_in_handoff"
NO_API_KEY = "no_api_key"
AUTO_REPLY_DISABLED = "auto_reply_disabled"

KEYWORD_HANDOFF_REASON = "User requested a human agent"
MODEL_HANDOFF_REASON = "AI assistant requested a human agent"


@dataclass
class ReplyDecision:
    """Outcome of the pre-generation checks: skip, handoff or generate."""
    action: str
    reason: Optional[str] = None
    service: Optional[AIService] = None

    @property
    def skipped(self) -> bool:
        return self.action == "skip"


@dataclass
class AutoReplyResult:
    outcome: str  # replied, fallback, handoff, skipped
    reply: Optional[str] = None
    message_id: Optional[str] = None
    reason: Optional[str] = None
    handoff_to_human: bool = False


class _MarkerFilter:
    """
    Removes the handoff marker from streamed text.

    A trailing fragment that could be the start of the marker is held back
    until the next delta shows whether it is.
    """

    def __init__(self):
        self.pending = ""

    def feed(self, text: str) -> str:
        buffer = (self.pending + text).replace(HANDOFF_MARKER, "")
        keep = 0
        for n in range(min(len(buffer), len(HANDOFF_MARKER) - 1), 0, -1):
            if HANDOFF_MARKER.startswith(buffer[-n:]):
                keep = n
                break
        self.pending = buffer[len(buffer) - keep:] if keep else ""
        return buffer[:len(buffer) - keep]

    def flush(self) -> str:
        rest, self.pending = self.pending, ""
        return rest


class AutoReplyOrchestrator:
    """
    Args:
        service_factory: Builds an AIService from a channel AI config, or None
            when the channel cannot be served. Defaults to AIService.create.
        notifier: Human operator notifier
        knowledge: Knowledge base searched when the config enables it
        settings: Application settings
    """

    def __init__(
        self,
        service_factory: Optional[Callable[[AIConfig], Optional[AIService]]] = None,
        notifier: Optional[HandoffNotifier] = None,
        knowledge: Optional[KnowledgeBase] = None,
        settings: Settings = default_settings,
    ):
        self.service_factory = service_factory or (lambda config: AIService.create(config, settings))
        self.notifier = notifier or HandoffNotifier(settings=settings)
        self.knowledge = knowledge or KnowledgeBase(settings=settings)
        self.settings = settings

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    def decide(self, channel_config: ChannelConfig, conversation, user_text: str) -> ReplyDecision:
        ai_config = channel_config.active_ai_config
        if ai_config is None:
            return ReplyDecision("skip", AI_DISABLED)
        if ai_config.response_mode == "agent_only":
            return ReplyDecision("skip", AGENT_ONLY_MODE)
        if conversation.status == "handoff":
            return ReplyDecision("skip", CONVERSATION_IN_HANDOFF)

        service = self.service_factory(ai_config)
        if service is None:
            return ReplyDecision("skip", NO_API_KEY)

        if service.should_handoff(user_text):
            return ReplyDecision("handoff", service=service)
        if not ai_config.auto_reply:
            return ReplyDecision("skip", AUTO_REPLY_DISABLED, service=service)
        return ReplyDecision("generate", service=service)

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    async def build_messages(
        self,
        db: Session,
        ai_config: AIConfig,
        conversation,
        user_text: str,
        trigger_message_id: Optional[str] = None,
    ) -> List[dict]:
        """
        Recent history as alternating user/assistant turns, then the new user
        text with any knowledge-base context appended.
        """
        history = storage.get_recent_messages(
            db, conversation.id, self.settings.AI_HISTORY_LIMIT, exclude_id=trigger_message_id
        )

        messages: List[dict] = []

        def append(role: str, content: str) -> None:
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] += "\n" + content
            else:
                messages.append({"role": role, "content": content})

        for message in history:
            append("user" if message.sender_type == "user" else "assistant", message.body)

        content = user_text
        if ai_config.knowledge_base_enabled and conversation.channel_id:
            chunks = await self.knowledge.search(db, conversation.channel_id, user_text)
            context = format_context(chunks)
            if context:
                content = f"{user_text}\n\n{context}"
        append("user", content)
        return messages

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist_reply(self, db: Session, conversation, body: str, outcome: str):
        message, _ = storage.create_message(
            db,
            conversation.id,
            body=body,
            type="text",
            sender_type="bot",
            provider=conversation.channel,
            status="sent",
            meta={"is_auto_reply": True, "ai_outcome": outcome},
        )
        storage.update_conversation_last_message(db, conversation.id)
        record_ai_reply(outcome)
        logger.info(f"AI reply stored: conversation={conversation.id}, outcome={outcome}")
        return message

    async def _hand_off(self, db: Session, conversation, user_text: str, body: str, reason: str, source: str):
        message = self._persist_reply(db, conversation, body, "handoff")
        storage.mark_conversation_handoff(db, conversation.id)
        await self.notifier.notify(conversation.id, user_text, reason, source)
        return message

    async def _fallback(self, db: Session, conversation, service: AIService):
        logger.warning(f"Using fallback reply for conversation {conversation.id}")
        return self._persist_reply(db, conversation, service.fallback_message, "fallback")

    # -------------------------------------------------------------------------
    # Blocking path
    # -------------------------------------------------------------------------

    async def respond(
        self,
        db: Session,
        channel_config: ChannelConfig,
        conversation,
        user_text: str,
        trigger_message_id: Optional[str] = None,
        source: str = "webhook",
    ) -> AutoReplyResult:
        decision = self.decide(channel_config, conversation, user_text)
        if decision.skipped:
            logger.info(f"AI reply skipped: conversation={conversation.id}, reason={decision.reason}")
            record_ai_reply("skipped")
            return AutoReplyResult("skipped", reason=decision.reason)

        if decision.action == "handoff":
            notice = self.settings.HANDOFF_NOTICE_MESSAGE
            message = await self._hand_off(db, conversation, user_text, notice, KEYWORD_HANDOFF_REASON, source)
            return AutoReplyResult("handoff", reply=notice, message_id=message.id, handoff_to_human=True)

        service = decision.service
        if service.config.auto_reply_delay:
            await asyncio.sleep(service.config.auto_reply_delay)

        try:
            messages = await self.build_messages(db, service.config, conversation, user_text, trigger_message_id)
            response = await service.generate(messages)
        except Exception:
            logger.exception(f"AI reply failed for conversation {conversation.id}")
            message = await self._fallback(db, conversation, service)
            return AutoReplyResult("fallback", reply=message.body, message_id=message.id)

        if response.error is None and response.handoff_to_human:
            body = response.content or self.settings.HANDOFF_NOTICE_MESSAGE
            message = await self._hand_off(db, conversation, user_text, body, MODEL_HANDOFF_REASON, source)
            return AutoReplyResult("handoff", reply=body, message_id=message.id, handoff_to_human=True)

        if response.error is not None or not response.content:
            message = await self._fallback(db, conversation, service)
            return AutoReplyResult("fallback", reply=message.body, message_id=message.id)

        message = self._persist_reply(db, conversation, response.content, "replied")
        return AutoReplyResult("replied", reply=response.content, message_id=message.id)

    # -------------------------------------------------------------------------
    # Streaming path
    # -------------------------------------------------------------------------

    async def stream_reply(
        self,
        db: Session,
        decision: ReplyDecision,
        conversation_id: str,
        user_text: str,
        trigger_message_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[dict]:
        """
        Yield stream events: ``start``, zero or more ``chunk``, then one of
        ``done`` or ``error``. The assistant message is stored before the
        terminal event is yielded.
        """
        conversation = storage.get_conversation(db, conversation_id)
        yield {"type": "start", "conversation_id": conversation_id}

        if decision.action == "handoff":
            notice = self.settings.HANDOFF_NOTICE_MESSAGE
            message = await self._hand_off(
                db, conversation, user_text, notice, KEYWORD_HANDOFF_REASON, "widget_stream"
            )
            yield {"type": "done", "full_response": notice, "handoff_to_human": True, "message_id": message.id}
            return

        service = decision.service
        marker_filter = _MarkerFilter()
        parts: List[str] = []
        try:
            messages = await self.build_messages(db, service.config, conversation, user_text, trigger_message_id)
            async for delta in service.stream(messages, cancel_token):
                parts.append(delta)
                visible = marker_filter.feed(delta)
                if visible:
                    yield {"type": "chunk", "content": visible}
            tail = marker_filter.flush()
            if tail:
                yield {"type": "chunk", "content": tail}
        except Exception as e:
            logger.error(f"AI stream failed for conversation {conversation_id}: {e}")
            message = await self._fallback(db, conversation, service)
            yield {"type": "error", "fallback": message.body}
            return

        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"Client disconnected, storing partial reply for {conversation_id}")

        full_response, handoff = strip_handoff_marker("".join(parts))
        if handoff:
            full_response = full_response or self.settings.HANDOFF_NOTICE_MESSAGE
            message = await self._hand_off(
                db, conversation, user_text, full_response, MODEL_HANDOFF_REASON, "widget_stream"
            )
        elif not full_response:
            message = await self._fallback(db, conversation, service)
            yield {"type": "error", "fallback": message.body}
            return
        else:
            message = self._persist_reply(db, conversation, full_response, "replied")

        yield {
            "type": "done",
            "full_response": full_response,
            "handoff_to_human": handoff,
            "message_id": message.id,
        }
