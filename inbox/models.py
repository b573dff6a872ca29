"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint

from inbox.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(Base):
    """
    A configured messaging integration (WhatsApp number, Facebook page, widget...).

    Table: channels
    `config` holds the provider-specific blob, including `verify_token`,
    `widget_token`, `access_token`, `ai_enabled` and `ai_config`.
    """
    __tablename__ = "channels"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False, default="")
    type = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Contact(Base):
    """
    External identity, one row per (provider, external_id).

    Table: contacts
    """
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_contacts_provider_external_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    provider = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    source = Column(String, nullable=False)
    last_interaction = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Conversation(Base):
    """
    Thread between one contact and one channel.

    Table: conversations
    status: open, handoff, closed
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=_new_id)
    contact_id = Column(String, ForeignKey("contacts.id"), nullable=False, index=True)
    channel = Column(String, nullable=False)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=True, index=True)
    status = Column(String, nullable=False, default="open")
    meta = Column("metadata", JSON, nullable=False, default=dict)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Message(Base):
    """
    Append-only record of a single inbound or outbound message.

    Table: messages
    (provider, external_id) is unique when external_id is present, which
    makes redelivered webhooks idempotent and lets status updates find
    their target.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_messages_provider_external_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    body = Column(Text, nullable=True)
    type = Column(String, nullable=False, default="text")
    sender_type = Column(String, nullable=False)
    provider = Column(String, nullable=True)
    external_id = Column(String, nullable=True)
    sender_id = Column(String, nullable=True)
    media_url = Column(String, nullable=True)
    media_mime = Column(String, nullable=True)
    media_size = Column(Integer, nullable=True)
    media_name = Column(String, nullable=True)
    status = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class KnowledgeChunk(Base):
    """
    Embedded slice of a knowledge-base document, scoped to a channel.

    Table: knowledge_chunks
    """
    __tablename__ = "knowledge_chunks"

    id = Column(String, primary_key=True, default=_new_id)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    content = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
