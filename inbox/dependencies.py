"""
FastAPI dependencies for the shared service objects.

Tests replace these through ``app.dependency_overrides``.
"""

from functools import lru_cache

from sqlalchemy.orm import sessionmaker

from inbox.config import settings
from inbox.feed import ConversationFeed
from inbox.handoff import HandoffNotifier
from inbox.knowledge import KnowledgeBase
from inbox.media import MediaRelay, build_object_storage
from inbox.orchestrator import AutoReplyOrchestrator
from inbox.outbound import OutboundSender
from inbox.storage import SessionLocal


@lru_cache()
def get_media_relay() -> MediaRelay:
    return MediaRelay(build_object_storage(settings), settings=settings)


@lru_cache()
def get_outbound_sender() -> OutboundSender:
    return OutboundSender(settings=settings)


@lru_cache()
def get_knowledge_base() -> KnowledgeBase:
    return KnowledgeBase(settings=settings)


@lru_cache()
def get_orchestrator() -> AutoReplyOrchestrator:
    return AutoReplyOrchestrator(
        notifier=HandoffNotifier(settings=settings),
        knowledge=get_knowledge_base(),
        settings=settings,
    )


@lru_cache()
def get_conversation_feed() -> ConversationFeed:
    return ConversationFeed(
        SessionLocal,
        poll_seconds=settings.WIDGET_STREAM_POLL_SECONDS,
        heartbeat_seconds=settings.WIDGET_STREAM_HEARTBEAT_SECONDS,
        max_seconds=settings.WIDGET_STREAM_MAX_SECONDS,
    )


def get_session_factory() -> sessionmaker:
    """Session factory for work that outlives the request (streamed replies)."""
    return SessionLocal
