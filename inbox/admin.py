"""
Operator API for the per-channel knowledge base.

Both routes require ``Authorization: Bearer <ADMIN_API_KEY>`` and are
disabled (503) while ADMIN_API_KEY is empty.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from inbox import storage
from inbox.config import settings
from inbox.dependencies import get_knowledge_base
from inbox.knowledge import KnowledgeBase, KnowledgeBaseUnavailable
from inbox.schemas import (
    ErrorResponse,
    KnowledgeChunkResponse,
    KnowledgeDocumentRequest,
    KnowledgeDocumentResponse,
    KnowledgeSearchRequest,
    KnowledgeSearchResponse,
)
from inbox.storage import get_db

logger = logging.getLogger(__name__)


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="admin API disabled")

    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token.isascii() or not hmac.compare_digest(token, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin key")


router = APIRouter(
    prefix="/api/knowledge",
    tags=["knowledge"],
    dependencies=[Depends(require_admin)],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


def _channel_or_404(db: Session, channel_id: str):
    channel = storage.get_channel(db, channel_id)
    if channel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="channel not found")
    return channel


@router.post(
    "/documents",
    response_model=KnowledgeDocumentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
)
async def add_document(
    body: KnowledgeDocumentRequest,
    db: Session = Depends(get_db),
    knowledge: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeDocumentResponse:
    """
    Chunk, embed and store a document for one channel.

    503 when no embedder is configured.
    """
    channel = _channel_or_404(db, body.channel_id)
    try:
        chunks = await knowledge.add_document(db, channel.id, body.title, body.text)
    except KnowledgeBaseUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return KnowledgeDocumentResponse(channel_id=channel.id, title=body.title, chunks=len(chunks))


@router.post("/search", response_model=KnowledgeSearchResponse, responses={404: {"model": ErrorResponse}})
async def search(
    body: KnowledgeSearchRequest,
    db: Session = Depends(get_db),
    knowledge: KnowledgeBase = Depends(get_knowledge_base),
) -> KnowledgeSearchResponse:
    """The chunks the assistant would be given for `query`, best match first."""
    channel = _channel_or_404(db, body.channel_id)
    chunks = await knowledge.search(db, channel.id, body.query, top_k=body.top_k)
    return KnowledgeSearchResponse(results=[KnowledgeChunkResponse.model_validate(chunk) for chunk in chunks])
