"""
Provider payload normalization.

Each provider has one normalizer turning its webhook JSON into a list of
``NormalizedEvent`` values:

- ``StatusUpdate``: delivery receipt for a message we already stored
- ``InboundMessage``: a message sent by a contact
- ``ReadReceipt``: read watermark covering every earlier outbound message

``normalize(provider, payload)`` picks the normalizer from ``NORMALIZERS``.
Every raw event is normalized on its own: a malformed event is logged and
skipped, the rest of the delivery is still returned.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


# Keyed by the major part of a declared mime/type string ("image/png" -> "image").
MEDIA_TYPES: Dict[str, MessageType] = {
    "image": MessageType.IMAGE,
    "sticker": MessageType.IMAGE,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "document": MessageType.FILE,
    "file": MessageType.FILE,
    "application": MessageType.FILE,
}

DEFAULT_MEDIA_TYPE = MessageType.FILE

KNOWN_STATUSES = ("sent", "delivered", "read")


def classify_media(declared_type: Optional[str]) -> MessageType:
    """Map a declared media type or mime string to a message type, defaulting to file."""
    if not declared_type:
        return DEFAULT_MEDIA_TYPE
    major = declared_type.strip().lower().split("/", 1)[0]
    return MEDIA_TYPES.get(major, DEFAULT_MEDIA_TYPE)


# =============================================================================
# Normalized Event Models
# =============================================================================

class MediaRef(BaseModel):
    """Pointer to provider-hosted media: a URL, or a provider media id to resolve."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    url: Optional[str] = None
    media_id: Optional[str] = None
    declared_type: str = "file"
    mime: Optional[str] = None
    filename: Optional[str] = None

    @property
    def message_type(self) -> MessageType:
        return classify_media(self.mime or self.declared_type)


class StatusUpdate(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    kind: Literal["status"] = "status"
    external_id: str
    status: str


class ReadReceipt(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    kind: Literal["read"] = "read"
    sender_id: str
    watermark: datetime


class InboundMessage(BaseModel):
    # Providers send ids as numbers or strings; they are stored as strings
    model_config = ConfigDict(coerce_numbers_to_str=True)

    kind: Literal["message"] = "message"
    sender_id: str
    sender_name: Optional[str] = None
    external_id: Optional[str] = None
    text: Optional[str] = None
    media: Optional[MediaRef] = None
    event_type: Optional[str] = None
    timestamp: Optional[Any] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


NormalizedEvent = Annotated[
    Union[StatusUpdate, InboundMessage, ReadReceipt],
    Field(discriminator="kind"),
]


def _get(data: Any, *path: str) -> Any:
    """Walk nested dicts, returning None as soon as a step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _guarded(provider: str, build: Callable[[], Any]) -> list:
    """Run the normalizer of one raw event; a malformed event yields nothing."""
    try:
        result = build()
    except Exception as e:
        logger.warning(f"Skipping malformed {provider} event: {e!r}")
        return []
    if result is None:
        return []
    return result if isinstance(result, list) else [result]


def _status_update(external_id: Any, status: Any) -> Optional[StatusUpdate]:
    if not external_id or not isinstance(status, str):
        return None
    status = status.lower()
    if status not in KNOWN_STATUSES:
        logger.info(f"Ignoring unsupported delivery status: {status}")
        return None
    return StatusUpdate(external_id=str(external_id), status=status)


# =============================================================================
# Generic normalizer (TikTok and similarly shaped providers)
# =============================================================================

def extract_raw_events(payload: Any) -> List[dict]:
    """
    Locate the list of individual events inside a generic payload.

    Looks at ``events``, then ``data``, then ``entry[].messaging`` /
    ``entry[].events``; otherwise a non-empty payload is a single event.
    """
    if not isinstance(payload, dict) or not payload:
        return []

    for key in ("events", "data"):
        value = payload.get(key)
        if value:
            items = value if isinstance(value, list) else [value]
            return [item for item in items if isinstance(item, dict)]

    entries = payload.get("entry")
    if isinstance(entries, list):
        events = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            events.extend(_list(entry.get("messaging")) or _list(entry.get("events")))
        return [item for item in events if isinstance(item, dict)]

    return [payload]


def _generic_statuses(event: dict) -> List[StatusUpdate]:
    statuses = event.get("statuses")
    if statuses is None:
        status = event.get("status")
        if isinstance(status, str):
            # Flat receipt: the event itself carries id + status
            status = {"id": _first(event.get("message_id"), event.get("id")), "status": status}
        statuses = [status]
    elif not isinstance(statuses, list):
        statuses = [statuses]

    updates = []
    for item in statuses:
        if isinstance(item, dict):
            update = _status_update(item.get("id"), item.get("status"))
            if update is not None:
                updates.append(update)
    return updates


def _generic_event(event: dict, provider: str) -> List[Union[StatusUpdate, InboundMessage]]:
    if event.get("status") or event.get("statuses"):
        return _generic_statuses(event)

    sender_id = _first(
        _get(event, "sender", "id"),
        _get(event, "from", "id"),
        _get(event, "user", "id"),
        event.get("user_id"),
    )
    if sender_id is None:
        logger.info(f"Dropping {provider} event without sender id", extra={"event_keys": list(event)})
        return []

    text = None
    message_text = _get(event, "message", "text")
    if isinstance(message_text, str):
        text = message_text
    content = _get(event, "text", "content")
    if isinstance(content, str):
        text = content

    media = None
    raw_media = _get(event, "message", "media") or event.get("media")
    if isinstance(raw_media, dict) and raw_media.get("url"):
        declared = str(raw_media.get("type") or raw_media.get("mime_type") or "file")
        media = MediaRef(
            url=raw_media["url"],
            declared_type=declared,
            filename=raw_media.get("name") or raw_media.get("filename"),
        )

    return [
        InboundMessage(
            sender_id=str(sender_id),
            sender_name=_first(
                _get(event, "sender", "name"),
                _get(event, "user", "name"),
                _get(event, "profile", "display_name"),
            ),
            external_id=_first(
                _get(event, "message", "id"),
                event.get("message_id"),
                event.get("event_id"),
                event.get("id"),
            ),
            text=text,
            media=media,
            event_type=event.get("event_type") or event.get("event"),
            timestamp=_first(event.get("timestamp"), event.get("create_time")),
            raw=event,
        )
    ]


def normalize_generic(payload: Any, provider: str = "tiktok") -> List[Union[StatusUpdate, InboundMessage]]:
    normalized = []
    for event in extract_raw_events(payload):
        normalized.extend(_guarded(provider, lambda: _generic_event(event, provider)))
    return normalized


# =============================================================================
# WhatsApp Cloud API
# =============================================================================

WHATSAPP_MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")


def _whatsapp_contact_name(value: dict, wa_id: str) -> Optional[str]:
    contacts = [c for c in _list(value.get("contacts")) if isinstance(c, dict)]
    for contact in contacts:
        if contact.get("wa_id") == wa_id:
            return _get(contact, "profile", "name")
    if contacts:
        return _get(contacts[0], "profile", "name")
    return None


def _whatsapp_message(value: dict, msg: dict) -> Optional[InboundMessage]:
    wa_id = msg.get("from")
    if not wa_id:
        logger.info("Dropping WhatsApp message without sender")
        return None

    msg_type = msg.get("type") or "text"
    body = _get(msg, "text", "body")
    media = None

    if msg_type in WHATSAPP_MEDIA_TYPES:
        payload = msg.get(msg_type)
        if not isinstance(payload, dict):
            payload = {}
        caption = payload.get("caption")
        if caption:
            body = caption
        if payload.get("id"):
            media = MediaRef(
                media_id=payload["id"],
                declared_type=msg_type,
                mime=payload.get("mime_type"),
                filename=payload.get("filename"),
            )
        else:
            placeholder = f"[{msg_type} without media id]"
            body = f"{placeholder}\n\n{caption}" if caption else placeholder

    return InboundMessage(
        sender_id=str(wa_id),
        sender_name=_whatsapp_contact_name(value, wa_id),
        external_id=msg.get("id"),
        text=body,
        media=media,
        event_type=msg_type,
        timestamp=msg.get("timestamp"),
        raw=msg,
    )


def normalize_whatsapp(payload: Any) -> List[Union[StatusUpdate, InboundMessage]]:
    normalized = []
    for entry in _list(_get(payload, "entry")):
        for change in _list(_get(entry, "changes")):
            value = _get(change, "value")
            if not isinstance(value, dict):
                continue
            for status in _list(value.get("statuses")):
                if isinstance(status, dict):
                    normalized.extend(
                        _guarded("whatsapp", lambda: _status_update(status.get("id"), status.get("status")))
                    )
            for msg in _list(value.get("messages")):
                if isinstance(msg, dict):
                    normalized.extend(_guarded("whatsapp", lambda: _whatsapp_message(value, msg)))
    return normalized


# =============================================================================
# Meta Messenger / Instagram messaging
# =============================================================================

def _meta_message(event: dict, sender_id: str) -> Optional[InboundMessage]:
    msg = event.get("message")
    if not isinstance(msg, dict) or msg.get("is_echo"):
        return None

    media = None
    attachments = _list(msg.get("attachments"))
    if attachments and isinstance(attachments[0], dict):
        attachment = attachments[0]
        url = _get(attachment, "payload", "url")
        if url:
            media = MediaRef(url=url, declared_type=str(attachment.get("type") or "file"))

    text = msg.get("text")
    return InboundMessage(
        sender_id=sender_id,
        external_id=msg.get("mid"),
        text=text if isinstance(text, str) else None,
        media=media,
        event_type="message",
        timestamp=event.get("timestamp"),
        raw=event,
    )


def _meta_event(event: dict) -> List[Union[StatusUpdate, InboundMessage, ReadReceipt]]:
    sender_id = _get(event, "sender", "id")

    if event.get("message"):
        if sender_id is None:
            logger.info("Dropping Meta message without sender id")
            return []
        message = _meta_message(event, str(sender_id))
        return [message] if message is not None else []

    normalized = []
    for mid in _list(_get(event, "delivery", "mids")):
        update = _status_update(mid, "delivered")
        if update is not None:
            normalized.append(update)

    read = event.get("read")
    if isinstance(read, dict):
        if read.get("mid"):
            update = _status_update(read["mid"], "read")
            if update is not None:
                normalized.append(update)
        elif read.get("watermark") and sender_id is not None:
            watermark = datetime.fromtimestamp(int(read["watermark"]) / 1000, tz=timezone.utc)
            normalized.append(ReadReceipt(sender_id=str(sender_id), watermark=watermark))
    return normalized


def normalize_meta_messaging(payload: Any, provider: str = "facebook") -> list:
    normalized = []
    for entry in _list(_get(payload, "entry")):
        for event in _list(_get(entry, "messaging")):
            if isinstance(event, dict):
                normalized.extend(_guarded(provider, lambda: _meta_event(event)))
    return normalized


NORMALIZERS: Dict[str, Callable[[Any], list]] = {
    "tiktok": lambda payload: normalize_generic(payload, "tiktok"),
    "whatsapp": normalize_whatsapp,
    "facebook": lambda payload: normalize_meta_messaging(payload, "facebook"),
    "instagram": lambda payload: normalize_meta_messaging(payload, "instagram"),
}


def normalize(provider: str, payload: Any) -> list:
    """
    Normalize a provider payload.

    Raises:
        KeyError: provider has no registered normalizer
    """
    return NORMALIZERS[provider](payload)
