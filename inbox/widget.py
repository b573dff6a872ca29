"""
Public API of the embeddable website chat widget.

Visitors are contacts keyed by ("website", visitor_id). Every route answers
CORS preflight and attaches the same CORS headers to its responses.
"""

import logging
import uuid
from typing import Annotated, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from inbox import storage
from inbox.ai import CancellationToken
from inbox.dependencies import get_conversation_feed, get_orchestrator, get_session_factory
from inbox.feed import ConversationFeed
from inbox.metrics import record_ai_reply
from inbox.orchestrator import AI_DISABLED, AutoReplyOrchestrator
from inbox.resolver import record_interaction, resolve_contact, resolve_conversation
from inbox.schemas import (
    AIDisabledResponse,
    ChannelConfig,
    ErrorResponse,
    MessageResponse,
    MessagesListResponse,
    VisitorInfo,
    WidgetConfigResponse,
    WidgetConversationResponse,
    WidgetMessageRequest,
    WidgetMessageResponse,
)
from inbox.storage import get_db
from inbox.streaming import SSE_HEADERS, SSE_MEDIA_TYPE, sse_stream

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat/widget", tags=["widget"])

WIDGET_PROVIDER = "website"

GET_METHODS = "GET, OPTIONS"
POST_METHODS = "POST, OPTIONS"


def cors_headers(request: Request, methods: str) -> dict:
    """Echo the caller's origin (or *) and allow the given methods."""
    return {
        "Access-Control-Allow-Origin": request.headers.get("origin") or "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Max-Age": "86400",
    }


def _preflight(request: Request, methods: str) -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=cors_headers(request, methods))


def _channel_or_404(db: Session, token: str, headers: dict):
    channel = storage.get_channel_by_token(db, token)
    if channel is None:
        logger.warning("Widget request with invalid token")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invalid token", headers=headers)
    return channel


def _conversation_or_404(db: Session, conversation_id: str, channel, headers: dict):
    conversation = storage.get_conversation(db, conversation_id)
    if conversation is None or conversation.channel_id != channel.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found", headers=headers)
    return conversation


def _record_visitor_message(
    db: Session, request: Request, channel, body: WidgetMessageRequest, headers: dict
) -> Tuple[object, str, object]:
    """
    Resolve visitor and conversation, then store the visitor's message.

    Returns:
        Tuple of (conversation, visitor_id, message)
    """
    visitor_id = body.visitor_id or f"visitor_{uuid.uuid4().hex}"
    info = body.visitor_info or VisitorInfo()

    if body.conversation_id:
        conversation = _conversation_or_404(db, body.conversation_id, channel, headers)
        contact_id = conversation.contact_id
    else:
        contact = resolve_contact(db, WIDGET_PROVIDER, visitor_id, info.name, info.email, info.phone)
        conversation = resolve_conversation(
            db,
            contact.id,
            WIDGET_PROVIDER,
            channel.id,
            metadata={
                "visitor_info": info.model_dump(exclude_none=True),
                "user_agent": request.headers.get("user-agent"),
                "origin": request.headers.get("origin"),
            },
        )
        contact_id = contact.id

    message, _ = storage.create_message(
        db,
        conversation.id,
        body=body.message,
        type="text",
        sender_type="user",
        provider=WIDGET_PROVIDER,
        sender_id=visitor_id,
        meta={},
    )
    record_interaction(db, contact_id, conversation.id)
    return conversation, visitor_id, message


# =============================================================================
# Config
# =============================================================================

@router.options("/config")
async def config_preflight(request: Request) -> Response:
    return _preflight(request, GET_METHODS)


@router.get("/config", response_model=WidgetConfigResponse, responses={404: {"model": ErrorResponse}})
async def widget_config(
    request: Request,
    response: Response,
    token: Annotated[str, Query(min_length=1)],
    db: Session = Depends(get_db),
) -> WidgetConfigResponse:
    """Public appearance settings of the widget."""
    headers = cors_headers(request, GET_METHODS)
    channel = _channel_or_404(db, token, headers)
    config = ChannelConfig.from_channel(channel)
    response.headers.update(headers)

    return WidgetConfigResponse(
        welcome_title=config.welcome_title,
        welcome_message=config.welcome_message,
        widget_color=config.widget_color,
        position=config.position,
        reply_time=config.reply_time,
        online_status=config.online_status,
        pre_chat_form_enabled=config.pre_chat_form_enabled,
        ai_enabled=config.ai_enabled,
    )


# =============================================================================
# Messages
# =============================================================================

@router.options("/message")
async def message_preflight(request: Request) -> Response:
    return _preflight(request, POST_METHODS)


@router.post("/message", response_model=WidgetMessageResponse, responses={404: {"model": ErrorResponse}})
async def widget_message(
    body: WidgetMessageRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    orchestrator: AutoReplyOrchestrator = Depends(get_orchestrator),
) -> WidgetMessageResponse:
    """
    Store a visitor message and, when AI is enabled, answer it in the same response.
    """
    headers = cors_headers(request, POST_METHODS)
    channel = _channel_or_404(db, body.token, headers)
    channel_config = ChannelConfig.from_channel(channel)

    conversation, visitor_id, message = _record_visitor_message(db, request, channel, body, headers)

    reply: Optional[str] = None
    handoff = False
    if channel_config.active_ai_config is not None:
        result = await orchestrator.respond(
            db, channel_config, conversation, body.message, trigger_message_id=message.id, source="widget"
        )
        reply = result.reply
        handoff = result.handoff_to_human

    response.headers.update(headers)
    return WidgetMessageResponse(
        conversation_id=conversation.id,
        visitor_id=visitor_id,
        reply=reply,
        handoff_to_human=handoff,
    )


@router.options("/messages")
async def messages_preflight(request: Request) -> Response:
    return _preflight(request, GET_METHODS)


@router.get("/messages", response_model=MessagesListResponse, responses={404: {"model": ErrorResponse}})
async def widget_messages(
    request: Request,
    response: Response,
    token: Annotated[str, Query(min_length=1)],
    conversation_id: Annotated[str, Query(min_length=1)],
    last_message_id: Annotated[Optional[str], Query()] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """Messages of a widget conversation, oldest first, optionally only those after `last_message_id`."""
    headers = cors_headers(request, GET_METHODS)
    channel = _channel_or_404(db, token, headers)
    _conversation_or_404(db, conversation_id, channel, headers)

    messages = storage.get_messages_by_conversation(db, conversation_id, after_id=last_message_id)
    response.headers.update(headers)
    return MessagesListResponse(messages=[MessageResponse.model_validate(m) for m in messages])


# =============================================================================
# AI Stream
# =============================================================================

@router.options("/ai-stream")
async def ai_stream_preflight(request: Request) -> Response:
    return _preflight(request, POST_METHODS)


@router.post(
    "/ai-stream",
    responses={
        200: {
            "description": "text/event-stream of start/chunk/done|error frames, or a JSON "
                           "AIDisabledResponse when no reply will be generated",
        },
        404: {"model": ErrorResponse},
    },
)
async def widget_ai_stream(
    body: WidgetMessageRequest,
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: AutoReplyOrchestrator = Depends(get_orchestrator),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> Response:
    """
    Store the visitor message and stream the AI reply as Server-Sent Events.

    Frames are ``data: {json}\\n\\n``: one ``start``, zero or more ``chunk``,
    then ``done`` (reply already stored) or ``error`` (fallback stored).
    """
    headers = cors_headers(request, POST_METHODS)
    channel = _channel_or_404(db, body.token, headers)
    channel_config = ChannelConfig.from_channel(channel)

    conversation, visitor_id, message = _record_visitor_message(db, request, channel, body, headers)
    conversation_id = conversation.id
    trigger_message_id = message.id

    decision = orchestrator.decide(channel_config, conversation, body.message)
    if decision.skipped:
        logger.info(f"AI stream skipped: conversation={conversation_id}, reason={decision.reason}")
        record_ai_reply("skipped")
        disabled = AIDisabledResponse(
            conversation_id=conversation_id,
            visitor_id=visitor_id,
            reason=None if decision.reason == AI_DISABLED else decision.reason,
        )
        return JSONResponse(disabled.model_dump(exclude_none=True), headers=headers)

    cancel_token = CancellationToken()

    async def events():
        # The stream outlives the request session, so it gets its own
        stream_db = session_factory()
        try:
            async for event in orchestrator.stream_reply(
                stream_db, decision, conversation_id, body.message, trigger_message_id, cancel_token
            ):
                yield event
        finally:
            stream_db.close()

    fallback = decision.service.fallback_message
    return StreamingResponse(
        sse_stream(events(), cancel_token, fallback),
        media_type=SSE_MEDIA_TYPE,
        headers={**SSE_HEADERS, **headers},
    )


# =============================================================================
# Conversation Lookup and Live Stream
# =============================================================================

@router.options("/conversation")
async def conversation_preflight(request: Request) -> Response:
    return _preflight(request, GET_METHODS)


@router.get(
    "/conversation",
    response_model=WidgetConversationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def widget_conversation(
    request: Request,
    response: Response,
    token: Annotated[str, Query(min_length=1)],
    visitor_id: Annotated[str, Query(min_length=1)],
    db: Session = Depends(get_db),
) -> WidgetConversationResponse:
    """Let a returning visitor resume their open conversation on this channel."""
    headers = cors_headers(request, GET_METHODS)
    channel = _channel_or_404(db, token, headers)
    response.headers.update(headers)

    contact = storage.get_contact(db, WIDGET_PROVIDER, visitor_id)
    if contact is None:
        return WidgetConversationResponse()

    conversation = storage.get_live_conversation(db, contact.id, WIDGET_PROVIDER, channel.id)
    if conversation is None:
        return WidgetConversationResponse()

    return WidgetConversationResponse(
        conversation_id=conversation.id,
        created_at=conversation.created_at,
        last_message_at=conversation.last_message_at,
    )


@router.options("/stream")
async def stream_preflight(request: Request) -> Response:
    return _preflight(request, GET_METHODS)


@router.get(
    "/stream",
    responses={
        200: {"description": "text/event-stream of connected/message/ping frames"},
        404: {"model": ErrorResponse},
    },
)
async def widget_stream(
    request: Request,
    token: Annotated[str, Query(min_length=1)],
    conversation_id: Annotated[str, Query(min_length=1)],
    last_message_id: Annotated[Optional[str], Query()] = None,
    db: Session = Depends(get_db),
    feed: ConversationFeed = Depends(get_conversation_feed),
) -> StreamingResponse:
    """
    Push agent and bot replies of a conversation as Server-Sent Events.

    Frames: one ``connected``, then ``message`` for each new agent or bot
    message and a periodic ``ping``. The stream closes after
    WIDGET_STREAM_MAX_SECONDS; the widget reconnects with `last_message_id`.
    """
    headers = cors_headers(request, GET_METHODS)
    channel = _channel_or_404(db, token, headers)
    _conversation_or_404(db, conversation_id, channel, headers)

    cancel_token = CancellationToken()
    return StreamingResponse(
        sse_stream(feed.events(conversation_id, last_message_id, cancel_token), cancel_token, ""),
        media_type=SSE_MEDIA_TYPE,
        headers={**SSE_HEADERS, **headers},
    )
