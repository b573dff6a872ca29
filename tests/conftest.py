"""
Pytest configuration and shared fixtures.

The environment is prepared here before any inbox import so the module-level
settings, engine and session factory all point at a throwaway SQLite file.
External collaborators (language models, media hosts, operator
notifications, embeddings) are replaced by in-process fakes.
"""

import os
import tempfile

from cryptography.fernet import Fernet

_TEST_DIR = tempfile.mkdtemp(prefix="inbox-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WHATSAPP_APP_SECRET"] = "whatsapp-test-secret"
os.environ["META_APP_SECRET"] = "meta-test-secret"
os.environ["TIKTOK_APP_SECRET"] = "tiktok-test-secret"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode("utf-8")
os.environ["MEDIA_LOCAL_ROOT"] = os.path.join(_TEST_DIR, "media")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from inbox.config import get_settings  # noqa: E402
get_settings.cache_clear()

import inbox.models  # noqa: E402,F401
from inbox.ai import AIService, ModelClient  # noqa: E402
from inbox.dependencies import get_media_relay, get_orchestrator, get_outbound_sender  # noqa: E402
from inbox.encryption import encrypt_api_key  # noqa: E402
from inbox.main import app  # noqa: E402
from inbox.media import LocalFilesystemStorage, MediaRelay  # noqa: E402
from inbox.models import Channel  # noqa: E402
from inbox.orchestrator import AutoReplyOrchestrator  # noqa: E402
from inbox.outbound import OutboundSender  # noqa: E402
from inbox.storage import Base, SessionLocal, engine  # noqa: E402

TEST_API_KEY = "sk-test-key"
FALLBACK_TEXT = "Sorry, something went wrong. An agent will follow up."


# =============================================================================
# Fakes
# =============================================================================

class FakeModelClient(ModelClient):
    """
    Scripted model.

    Args:
        reply: Text returned by the blocking path
        chunks: Deltas yielded by the streaming path (defaults to [reply])
        error: Exception raised by both paths
        fail_after: Streaming only: raise `error` after this many chunks
    """

    def __init__(self, reply="Hello from the assistant", chunks=None, error=None, fail_after=None):
        self.reply = reply
        self.chunks = list(chunks) if chunks is not None else [reply]
        self.error = error
        self.fail_after = fail_after
        self.calls = []

    async def complete(self, system, messages, temperature, max_tokens):
        self.calls.append({"system": system, "messages": messages})
        if self.error is not None:
            raise self.error
        return self.reply, 42

    async def stream(self, system, messages, temperature, max_tokens, cancel_token=None):
        self.calls.append({"system": system, "messages": messages})
        if self.error is not None and self.fail_after is None:
            raise self.error
        for index, chunk in enumerate(self.chunks):
            if self.error is not None and index == self.fail_after:
                raise self.error
            if cancel_token is not None and cancel_token.cancelled:
                break
            yield chunk


class FakeNotifier:
    def __init__(self):
        self.calls = []

    async def notify(self, conversation_id, trigger_message, reason, source="webhook"):
        self.calls.append(
            {
                "conversation_id": conversation_id,
                "trigger_message": trigger_message,
                "reason": reason,
                "source": source,
            }
        )
        return True


class FakeKnowledge:
    def __init__(self, chunks=None):
        self.chunks = chunks or []
        self.queries = []

    async def search(self, db, channel_id, query, top_k=None):
        self.queries.append((channel_id, query))
        return list(self.chunks)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ai_config():
    """Factory for a channel `ai_config` blob with a valid encrypted key."""
    def factory(**overrides) -> dict:
        config = {
            "provider": "openai",
            "model": "gpt-4o-mini",
            "api_key_encrypted": encrypt_api_key(TEST_API_KEY),
            "system_prompt": "You are a helpful support assistant.",
            "fallback_message": FALLBACK_TEXT,
            "handoff_keywords": ["human", "agent"],
        }
        config.update(overrides)
        return config
    return factory


@pytest.fixture
def make_channel(db):
    """Factory that stores a channel and returns it."""
    def factory(channel_type="tiktok", status="active", name=None, **config) -> Channel:
        channel = Channel(
            name=name or f"{channel_type} channel",
            type=channel_type,
            status=status,
            config=config,
        )
        db.add(channel)
        db.commit()
        db.refresh(channel)
        return channel
    return factory


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def model():
    return FakeModelClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def knowledge():
    return FakeKnowledge()


@pytest.fixture
def orchestrator(model, notifier, knowledge):
    """Real orchestrator whose AI services talk to the fake model."""
    def service_factory(config):
        service = AIService.create(config)
        if service is not None:
            service.client = model
        return service

    return AutoReplyOrchestrator(service_factory=service_factory, notifier=notifier, knowledge=knowledge)


@pytest.fixture
def media_routes():
    """Map of URL -> (status, body, content_type) served by the fake media host."""
    return {}


@pytest.fixture
def media_requests():
    return []


@pytest.fixture
def relay(tmp_path, media_routes, media_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        media_requests.append(request)
        route = media_routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, content=b"not found")
        status_code, content, content_type = route
        headers = {"content-type": content_type} if content_type else {}
        return httpx.Response(status_code, content=content, headers=headers)

    storage = LocalFilesystemStorage(str(tmp_path / "media"), "http://media.test/files")
    return MediaRelay(storage, transport=httpx.MockTransport(handler))


@pytest.fixture
def graph_routes():
    """Map of send URL (without query) -> (status, json body) served by the fake provider APIs."""
    return {}


@pytest.fixture
def graph_requests():
    return []


@pytest.fixture
def sender(graph_routes, graph_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        graph_requests.append(request)
        route = graph_routes.get(str(request.url).split("?")[0])
        if route is None:
            return httpx.Response(404, json={"error": {"message": "unknown route"}})
        status_code, body = route
        return httpx.Response(status_code, json=body)

    return OutboundSender(transport=httpx.MockTransport(handler))


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(tables, orchestrator, relay, sender):
    """Test client with a fresh database and fake collaborators."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_media_relay] = lambda: relay
    app.dependency_overrides[get_outbound_sender] = lambda: sender

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
