"""
Tests for the knowledge base: token chunking, similarity search and the
operator API that fills it.
"""

import pytest

from inbox.config import settings
from inbox.dependencies import get_knowledge_base
from inbox.knowledge import KnowledgeBase, KnowledgeBaseUnavailable, chunk_text, get_encoding
from inbox.main import app
from inbox.models import KnowledgeChunk

KEYWORDS = ["refund", "shipping", "hours"]
ADMIN_KEY = "admin-secret"


class WordEncoding:
    """Tokenizer with tiktoken's encode/decode surface: one token per word."""

    def __init__(self):
        self.vocab = []

    def encode(self, text):
        tokens = []
        for word in text.split():
            if word not in self.vocab:
                self.vocab.append(word)
            tokens.append(self.vocab.index(word))
        return tokens

    def decode(self, tokens):
        return " ".join(self.vocab[token] for token in tokens)


class KeywordEmbedder:
    """Embeds a text as the counts of a few keywords."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def __call__(self, texts):
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [[float(text.lower().split().count(word)) for word in KEYWORDS] for text in texts]


def small_chunks(**overrides):
    values = {"KNOWLEDGE_CHUNK_TOKENS": 4, "KNOWLEDGE_CHUNK_OVERLAP": 1}
    values.update(overrides)
    return settings.model_copy(update=values)


def store_chunk(db, channel, content, embedding, title="FAQ"):
    chunk = KnowledgeChunk(channel_id=channel.id, title=title, content=content, embedding=embedding)
    db.add(chunk)
    db.commit()
    return chunk


class TestChunking:
    def test_windows_overlap_by_the_configured_tokens(self):
        text = " ".join(f"w{i}" for i in range(10))

        chunks = chunk_text(text, max_tokens=4, overlap=1, encoding=WordEncoding())

        assert chunks == ["w0 w1 w2 w3", "w3 w4 w5 w6", "w6 w7 w8 w9"]

    def test_short_text_is_one_chunk(self):
        assert chunk_text("opening hours", max_tokens=4, overlap=1, encoding=WordEncoding()) == ["opening hours"]

    def test_blank_text_has_no_chunks(self):
        assert chunk_text("   ", max_tokens=4, overlap=1, encoding=WordEncoding()) == []

    def test_overlap_as_large_as_the_window_still_advances(self):
        text = " ".join(f"w{i}" for i in range(5))

        chunks = chunk_text(text, max_tokens=2, overlap=5, encoding=WordEncoding())

        assert chunks == ["w0 w1", "w1 w2", "w2 w3", "w3 w4"]

    def test_window_must_hold_a_token(self):
        with pytest.raises(ValueError):
            chunk_text("anything", max_tokens=0, encoding=WordEncoding())

    def test_default_encoding_counts_tiktoken_tokens(self):
        try:
            encoding = get_encoding("cl100k_base")
        except Exception as e:
            pytest.skip(f"cl100k_base not available: {e}")

        text = "Refunds are issued within five business days. " * 40
        chunks = chunk_text(text, max_tokens=50, overlap=10, encoding=encoding)

        assert len(chunks) > 1
        assert all(len(encoding.encode(chunk)) <= 50 for chunk in chunks)


class TestKnowledgeBase:
    @pytest.mark.asyncio
    async def test_add_document_stores_embedded_chunks(self, db, make_channel):
        channel = make_channel("website")
        embed = KeywordEmbedder()
        knowledge = KnowledgeBase(embed=embed, settings=small_chunks(), encoding=WordEncoding())

        chunks = await knowledge.add_document(
            db, channel.id, "Policies", "refund within days shipping takes five days hours nine"
        )

        assert len(chunks) == 3
        assert embed.calls == [[chunk.content for chunk in chunks]]
        stored = db.query(KnowledgeChunk).filter(KnowledgeChunk.channel_id == channel.id).all()
        assert len(stored) == 3
        assert {chunk.title for chunk in stored} == {"Policies"}
        assert [chunk.content for chunk in chunks] == [
            "refund within days shipping",
            "shipping takes five days",
            "days hours nine",
        ]
        assert [chunk.embedding for chunk in chunks] == [[1.0, 1.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]

    @pytest.mark.asyncio
    async def test_add_document_without_embedder_raises(self, db, make_channel):
        channel = make_channel("website")
        knowledge = KnowledgeBase(settings=small_chunks(EMBEDDING_API_KEY=""), encoding=WordEncoding())

        with pytest.raises(KnowledgeBaseUnavailable):
            await knowledge.add_document(db, channel.id, "Policies", "refund policy")

    @pytest.mark.asyncio
    async def test_search_ranks_by_similarity_and_drops_weak_matches(self, db, make_channel):
        channel = make_channel("website")
        exact = store_chunk(db, channel, "refund policy", [1.0, 0.0, 0.0])
        partial = store_chunk(db, channel, "refund and shipping", [1.0, 1.0, 0.0])
        store_chunk(db, channel, "opening hours", [0.0, 0.0, 1.0])
        knowledge = KnowledgeBase(embed=KeywordEmbedder(), settings=settings)

        results = await knowledge.search(db, channel.id, "refund", top_k=3)

        assert [chunk.id for chunk in results] == [exact.id, partial.id]

    @pytest.mark.asyncio
    async def test_search_keeps_only_top_k(self, db, make_channel):
        channel = make_channel("website")
        exact = store_chunk(db, channel, "refund policy", [1.0, 0.0, 0.0])
        store_chunk(db, channel, "refund and shipping", [1.0, 1.0, 0.0])
        knowledge = KnowledgeBase(embed=KeywordEmbedder(), settings=settings)

        results = await knowledge.search(db, channel.id, "refund", top_k=1)

        assert [chunk.id for chunk in results] == [exact.id]

    @pytest.mark.asyncio
    async def test_search_is_scoped_to_the_channel(self, db, make_channel):
        channel = make_channel("website", name="shop")
        other = make_channel("website", name="other shop")
        store_chunk(db, other, "refund policy", [1.0, 0.0, 0.0])
        knowledge = KnowledgeBase(embed=KeywordEmbedder(), settings=settings)

        assert await knowledge.search(db, channel.id, "refund") == []

    @pytest.mark.asyncio
    async def test_embedder_failure_returns_no_chunks(self, db, make_channel):
        channel = make_channel("website")
        store_chunk(db, channel, "refund policy", [1.0, 0.0, 0.0])
        knowledge = KnowledgeBase(embed=KeywordEmbedder(error=RuntimeError("quota")), settings=settings)

        assert await knowledge.search(db, channel.id, "refund") == []

    @pytest.mark.asyncio
    async def test_search_without_embedder_returns_no_chunks(self, db, make_channel):
        channel = make_channel("website")
        store_chunk(db, channel, "refund policy", [1.0, 0.0, 0.0])
        knowledge = KnowledgeBase(settings=settings.model_copy(update={"EMBEDDING_API_KEY": ""}))

        assert await knowledge.search(db, channel.id, "refund") == []


class TestKnowledgeAPI:
    @pytest.fixture
    def admin(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
        knowledge = KnowledgeBase(embed=KeywordEmbedder(), settings=small_chunks(), encoding=WordEncoding())
        app.dependency_overrides[get_knowledge_base] = lambda: knowledge
        return client

    def auth(self, key=ADMIN_KEY):
        return {"Authorization": f"Bearer {key}"}

    def test_disabled_without_admin_key(self, client, make_channel, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
        channel = make_channel("website")

        response = client.post(
            "/api/knowledge/search",
            json={"channel_id": channel.id, "query": "refund"},
            headers=self.auth("anything"),
        )

        assert response.status_code == 503

    def test_wrong_key_is_rejected(self, admin, make_channel):
        channel = make_channel("website")

        response = admin.post(
            "/api/knowledge/documents",
            json={"channel_id": channel.id, "title": "FAQ", "text": "refund policy"},
            headers=self.auth("guess"),
        )

        assert response.status_code == 401

    def test_missing_key_is_rejected(self, admin, make_channel):
        channel = make_channel("website")

        response = admin.post("/api/knowledge/search", json={"channel_id": channel.id, "query": "refund"})

        assert response.status_code == 401

    def test_unknown_channel(self, admin):
        response = admin.post(
            "/api/knowledge/documents",
            json={"channel_id": "missing", "title": "FAQ", "text": "refund policy"},
            headers=self.auth(),
        )

        assert response.status_code == 404

    def test_uploaded_document_is_searchable(self, admin, make_channel):
        channel = make_channel("website")

        uploaded = admin.post(
            "/api/knowledge/documents",
            json={
                "channel_id": channel.id,
                "title": "Policies",
                "text": "refund refund policy applies shipping takes five days hours nine to five",
            },
            headers=self.auth(),
        )

        assert uploaded.status_code == 201
        assert uploaded.json() == {"channel_id": channel.id, "title": "Policies", "chunks": 4}

        found = admin.post(
            "/api/knowledge/search",
            json={"channel_id": channel.id, "query": "refund"},
            headers=self.auth(),
        )

        assert found.status_code == 200
        results = found.json()["results"]
        assert [result["content"] for result in results] == ["refund refund policy applies"]
        assert results[0]["title"] == "Policies"

    def test_upload_without_embedder_is_unavailable(self, admin, make_channel):
        channel = make_channel("website")
        app.dependency_overrides[get_knowledge_base] = lambda: KnowledgeBase(
            settings=small_chunks(EMBEDDING_API_KEY=""), encoding=WordEncoding()
        )

        response = admin.post(
            "/api/knowledge/documents",
            json={"channel_id": channel.id, "title": "FAQ", "text": "refund policy"},
            headers=self.auth(),
        )

        assert response.status_code == 503
