"""
Webhook ingestion: apply normalized events to the store.

Events of one delivery are processed sequentially, each in its own
try block, so one failing event never blocks its siblings.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from inbox import storage
from inbox.media import MEDIA_UPLOAD_ERROR_TEXT, MediaRelay, MediaRelayError, StoredMedia
from inbox.metrics import record_webhook_event
from inbox.normalizers import InboundMessage, MediaRef, MessageType, ReadReceipt, StatusUpdate
from inbox.orchestrator import AutoReplyOrchestrator, AutoReplyResult
from inbox.outbound import OutboundSender, OutboundSendError
from inbox.resolver import record_interaction, resolve_contact, resolve_conversation
from inbox.schemas import ChannelConfig

logger = logging.getLogger(__name__)


@dataclass
class IngestionSummary:
    """Per-outcome event counts of one webhook delivery."""
    messages: int = 0
    duplicates: int = 0
    statuses: int = 0
    reads: int = 0
    dropped: int = 0
    errors: int = 0
    ai_replies: int = 0
    replies_failed: int = 0

    def as_log_fields(self) -> dict:
        return asdict(self)


class WebhookIngestor:
    def __init__(
        self,
        relay: MediaRelay,
        orchestrator: AutoReplyOrchestrator,
        sender: Optional[OutboundSender] = None,
    ):
        self.relay = relay
        self.orchestrator = orchestrator
        self.sender = sender

    async def process(self, db: Session, provider: str, channel, events: Iterable) -> IngestionSummary:
        summary = IngestionSummary()
        channel_config = ChannelConfig.from_channel(channel)

        for event in events:
            try:
                if isinstance(event, StatusUpdate):
                    storage.update_message_status_by_external_id(db, provider, event.external_id, event.status)
                    summary.statuses += 1
                    record_webhook_event(provider, "status")
                elif isinstance(event, ReadReceipt):
                    updated = storage.mark_messages_read_by_watermark(db, provider, event.sender_id, event.watermark)
                    logger.debug(f"Read watermark applied to {updated} messages")
                    summary.reads += 1
                    record_webhook_event(provider, "read")
                else:
                    await self._ingest_message(db, provider, channel, channel_config, event, summary)
            except Exception:
                db.rollback()
                logger.exception(f"Failed to process {provider} event")
                summary.errors += 1
                record_webhook_event(provider, "error")

        return summary

    async def _relay_media(self, media: MediaRef, channel, channel_config: ChannelConfig) -> StoredMedia:
        source_url = media.url
        access_token = None
        if not source_url:
            access_token = channel_config.access_token
            source_url = await self.relay.resolve_whatsapp_media_url(media.media_id, access_token)
        return await self.relay.relay(
            source_url, media.mime or media.declared_type, channel.type, access_token=access_token
        )

    async def _ingest_message(
        self,
        db: Session,
        provider: str,
        channel,
        channel_config: ChannelConfig,
        event: InboundMessage,
        summary: IngestionSummary,
    ) -> None:
        if not (event.text or "").strip() and event.media is None:
            logger.info(f"Dropping {provider} message without text or media from {event.sender_id}")
            summary.dropped += 1
            record_webhook_event(provider, "dropped")
            return

        # Redelivery: skip before downloading any media again
        if storage.get_message_by_external_id(db, provider, event.external_id) is not None:
            logger.info(f"Duplicate {provider} message ignored: external_id={event.external_id}")
            summary.duplicates += 1
            record_webhook_event(provider, "duplicate")
            return

        contact = resolve_contact(db, provider, event.sender_id, event.sender_name)
        conversation = resolve_conversation(db, contact.id, channel.type, channel.id)

        body = event.text
        message_type = MessageType.TEXT.value
        media_fields = {}
        if event.media is not None:
            try:
                stored = await self._relay_media(event.media, channel, channel_config)
            except MediaRelayError as e:
                logger.error(f"Media relay failed for {provider} message {event.external_id}: {e}")
                body = f"{MEDIA_UPLOAD_ERROR_TEXT}\n\n{event.text}" if event.text else MEDIA_UPLOAD_ERROR_TEXT
            else:
                message_type = event.media.message_type.value
                media_fields = {
                    "media_url": stored.url,
                    "media_mime": stored.mime,
                    "media_size": stored.size,
                    "media_name": event.media.filename,
                }

        message, is_duplicate = storage.create_message(
            db,
            conversation.id,
            body=body,
            type=message_type,
            sender_type="user",
            provider=provider,
            external_id=event.external_id,
            sender_id=event.sender_id,
            meta={
                "raw": event.raw,
                f"{provider}_event_type": event.event_type,
                f"{provider}_timestamp": event.timestamp,
            },
            **media_fields,
        )
        if is_duplicate:
            summary.duplicates += 1
            record_webhook_event(provider, "duplicate")
            return

        record_interaction(db, contact.id, conversation.id)
        summary.messages += 1
        record_webhook_event(provider, "message")
        logger.info(f"Inbound {provider} message stored: id={message.id}, conversation={conversation.id}")

        user_text = (event.text or "").strip()
        if event.media is None and user_text and channel_config.active_ai_config is not None:
            result = await self.orchestrator.respond(
                db, channel_config, conversation, user_text, trigger_message_id=message.id, source="webhook"
            )
            if result.outcome != "skipped":
                summary.ai_replies += 1
            if result.message_id and result.reply and self.sender is not None:
                await self._deliver_reply(db, channel, channel_config, event.sender_id, result, summary)

    async def _deliver_reply(
        self,
        db: Session,
        channel,
        channel_config: ChannelConfig,
        recipient_id: str,
        result: AutoReplyResult,
        summary: IngestionSummary,
    ) -> None:
        try:
            external_id = await self.sender.send_text(channel.type, channel_config, recipient_id, result.reply)
        except OutboundSendError as e:
            logger.error(f"Reply {result.message_id} not delivered: {e}")
            storage.record_outbound_delivery(db, result.message_id, None, "failed")
            summary.replies_failed += 1
            return

        if external_id:
            storage.record_outbound_delivery(db, result.message_id, external_id, "sent")
