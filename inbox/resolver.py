"""
Mapping of external sender identities to contacts and conversations.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from inbox import storage

logger = logging.getLogger(__name__)

# Channel types where one account can own several channel instances,
# so conversations are also keyed by the channel instance.
MULTI_INSTANCE_CHANNEL_TYPES = frozenset({"website", "email"})


def resolve_contact(
    db: Session,
    provider: str,
    external_id: str,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
):
    """
    Find or create the contact for (provider, external_id).

    A known name is never overwritten; a supplied name only fills an empty one.
    """
    display_name = (display_name or "").strip() or None
    contact, created = storage.find_or_create_contact(
        db, provider, external_id, name=display_name, email=email, phone=phone
    )
    if not created and display_name and not contact.name:
        storage.update_contact_name(db, contact.id, display_name)
        db.refresh(contact)
        logger.info(f"Filled contact name: id={contact.id}")
    return contact


def resolve_conversation(
    db: Session,
    contact_id: str,
    channel_type: str,
    channel_id: Optional[str] = None,
    metadata: Optional[dict] = None,
):
    """Find or create the live conversation between a contact and a channel."""
    conversation, _ = storage.find_or_create_conversation(
        db,
        contact_id,
        channel_type,
        channel_id=channel_id,
        match_channel_id=channel_type in MULTI_INSTANCE_CHANNEL_TYPES,
        metadata=metadata,
    )
    return conversation


def record_interaction(db: Session, contact_id: str, conversation_id: str) -> None:
    """Bump conversation.last_message_at and contact.last_interaction to now."""
    storage.update_conversation_last_message(db, conversation_id)
    storage.update_contact_last_interaction(db, contact_id)
