"""
Per-channel knowledge base used to ground AI replies.

Documents are split into overlapping token windows, embedded, and stored in
``knowledge_chunks``. Search embeds the query and ranks the channel's
chunks by cosine similarity in Python.
"""

import logging
import math
from functools import lru_cache
from typing import Awaitable, Callable, List, Optional

import tiktoken
from openai import AsyncOpenAI
from sqlalchemy.orm import Session

from inbox.config import Settings, settings as default_settings
from inbox.models import KnowledgeChunk

logger = logging.getLogger(__name__)

Embedder = Callable[[List[str]], Awaitable[List[List[float]]]]


@lru_cache()
def get_encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def chunk_text(
    text: str,
    max_tokens: int = 350,
    overlap: int = 60,
    encoding: Optional[tiktoken.Encoding] = None,
) -> List[str]:
    if max_tokens < 1:
        raise ValueError("max_tokens must be positive")
    text = (text or "").strip()
    if not text:
        return []
    enc = encoding or get_encoding(default_settings.KNOWLEDGE_ENCODING)
    tokens = enc.encode(text)
    chunks = []
    start = 0
    while start < len(tokens):
        end = min(start + max_tokens, len(tokens))
        chunk = enc.decode(tokens[start:end]).strip()
        if chunk:
            chunks.append(chunk)
        if end == len(tokens):
            break
        start = max(start + 1, end - overlap)
    return chunks


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return dot / norm


class OpenAIEmbedder:
    def __init__(self, api_key: str, model: str):
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key)

    async def __call__(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        response = await self.client.embeddings.create(model=self.model, input=texts)
        return [item.embedding for item in response.data]


class KnowledgeBaseUnavailable(Exception):
    """Raised when documents are added but no embedder is configured."""


class KnowledgeBase:
    """
    Similarity search over a channel's document chunks.

    Args:
        embed: Async callable mapping texts to vectors. Defaults to the
            OpenAI embeddings API when EMBEDDING_API_KEY is set.
        settings: Application settings
        encoding: Tokenizer used for chunking. Defaults to the tiktoken
            encoding named by KNOWLEDGE_ENCODING.
    """

    def __init__(
        self,
        embed: Optional[Embedder] = None,
        settings: Settings = default_settings,
        encoding: Optional[tiktoken.Encoding] = None,
    ):
        self.settings = settings
        if embed is None and settings.EMBEDDING_API_KEY:
            embed = OpenAIEmbedder(settings.EMBEDDING_API_KEY, settings.EMBEDDING_MODEL)
        self.embed = embed
        self.encoding = encoding

    def chunk(self, text: str) -> List[str]:
        return chunk_text(
            text,
            self.settings.KNOWLEDGE_CHUNK_TOKENS,
            self.settings.KNOWLEDGE_CHUNK_OVERLAP,
            encoding=self.encoding or get_encoding(self.settings.KNOWLEDGE_ENCODING),
        )

    async def add_document(self, db: Session, channel_id: str, title: str, text: str) -> List[KnowledgeChunk]:
        if self.embed is None:
            raise KnowledgeBaseUnavailable("No embedder configured for the knowledge base")

        pieces = self.chunk(text)
        vectors = await self.embed(pieces)
        chunks = [
            KnowledgeChunk(channel_id=channel_id, title=title, content=piece, embedding=list(vector))
            for piece, vector in zip(pieces, vectors)
        ]
        db.add_all(chunks)
        db.commit()
        logger.info(f"Knowledge document stored: channel={channel_id}, title={title!r}, chunks={len(chunks)}")
        return chunks

    async def search(
        self, db: Session, channel_id: str, query: str, top_k: Optional[int] = None
    ) -> List[KnowledgeChunk]:
        """Best matching chunks above KNOWLEDGE_MIN_SCORE; [] on any failure."""
        query = (query or "").strip()
        if not query or not channel_id or self.embed is None:
            return []
        top_k = top_k or self.settings.KNOWLEDGE_TOP_K

        try:
            chunks = db.query(KnowledgeChunk).filter(KnowledgeChunk.channel_id == channel_id).all()
            if not chunks:
                return []
            query_vector = (await self.embed([query]))[0]
        except Exception as e:
            logger.error(f"Knowledge search failed for channel {channel_id}: {e}")
            return []

        scored = [(cosine_similarity(query_vector, chunk.embedding), chunk) for chunk in chunks]
        scored = [item for item in scored if item[0] >= self.settings.KNOWLEDGE_MIN_SCORE]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [chunk for _, chunk in scored[:top_k]]


def format_context(chunks: List[KnowledgeChunk]) -> str:
    """Render chunks as a context block appended to the user message; '' when empty."""
    if not chunks:
        return ""
    parts = []
    for chunk in chunks:
        heading = f"[{chunk.title}]\n" if chunk.title else ""
        parts.append(f"{heading}{chunk.content}")
    return "Relevant information:\n" + "\n\n".join(parts)
