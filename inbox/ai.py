"""
Language-model access for AI auto-replies.

Every supported provider is reached through the ``openai`` SDK: OpenAI
directly, Anthropic and Google through their OpenAI-compatible endpoints.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Tuple

from openai import AsyncOpenAI

from inbox.config import Settings, settings as default_settings
from inbox.encryption import KeyDecryptionError, decrypt_api_key
from inbox.schemas import AIConfig

logger = logging.getLogger(__name__)

HANDOFF_MARKER = "<<HANDOFF_TO_HUMAN>>"

# None means the SDK default endpoint
PROVIDER_BASE_URLS: Dict[str, Optional[str]] = {
    "openai": None,
    "anthropic": "https://api.anthropic.com/v1/",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
}


class UnsupportedProviderError(Exception):
    """Raised for an AI provider with no known endpoint."""


class CancellationToken:
    """Flag shared between the HTTP transport and a running model stream."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class AIResponse:
    content: str
    tokens_used: Optional[int] = None
    handoff_to_human: bool = False
    error: Optional[str] = None


def strip_handoff_marker(text: str) -> Tuple[str, bool]:
    """Remove every handoff marker from model output. Returns (clean_text, found)."""
    if HANDOFF_MARKER not in text:
        return text.strip(), False
    return text.replace(HANDOFF_MARKER, "").strip(), True


class ModelClient:
    """Chat-completion backend. Messages are ``{"role", "content"}`` dicts without the system prompt."""

    async def complete(
        self, system: str, messages: List[dict], temperature: float, max_tokens: int
    ) -> Tuple[str, Optional[int]]:
        raise NotImplementedError

    def stream(
        self,
        system: str,
        messages: List[dict],
        temperature: float,
        max_tokens: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        raise NotImplementedError


class OpenAIChatModel(ModelClient):
    def __init__(self, model: str, api_key: str, base_url: Optional[str] = None, timeout: float = 60.0):
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @staticmethod
    def _with_system(system: str, messages: List[dict]) -> List[dict]:
        if not system:
            return list(messages)
        return [{"role": "system", "content": system}, *messages]

    async def complete(self, system, messages, temperature, max_tokens):
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self._with_system(system, messages),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content if response.choices else None
        tokens = response.usage.total_tokens if response.usage else None
        return content or "", tokens

    async def stream(self, system, messages, temperature, max_tokens, cancel_token=None):
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=self._with_system(system, messages),
            temperature=temperature,
            max_tokens=max_tokens,
            stream=True,
        )
        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    logger.info("Model stream cancelled by client disconnect")
                    break
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        finally:
            await stream.close()


def build_model_client(provider: str, model: str, api_key: str, timeout: float = 60.0) -> ModelClient:
    if provider not in PROVIDER_BASE_URLS:
        raise UnsupportedProviderError(f"Unsupported AI provider: {provider}")
    return OpenAIChatModel(model, api_key, base_url=PROVIDER_BASE_URLS[provider], timeout=timeout)


class AIService:
    """
    Model client bound to one channel's AI configuration.

    Use ``AIService.create`` to build one from a stored config; it returns
    None when the channel cannot be served (no key, bad key, unknown provider).
    """

    def __init__(self, client: ModelClient, config: AIConfig, settings: Settings = default_settings):
        self.client = client
        self.config = config
        self.settings = settings

    @classmethod
    def create(cls, config: AIConfig, settings: Settings = default_settings) -> Optional["AIService"]:
        if not config.api_key_encrypted:
            logger.warning("AI service unavailable: no API key configured")
            return None
        try:
            api_key = decrypt_api_key(config.api_key_encrypted)
        except KeyDecryptionError as e:
            logger.error(f"AI service unavailable: {e}")
            return None
        if not api_key:
            logger.warning("AI service unavailable: empty API key")
            return None

        try:
            client = build_model_client(config.provider, config.model, api_key, settings.AI_REQUEST_TIMEOUT)
        except UnsupportedProviderError as e:
            logger.error(f"AI service unavailable: {e}")
            return None
        return cls(client, config, settings)

    @property
    def fallback_message(self) -> str:
        return self.config.fallback_message or self.settings.DEFAULT_FALLBACK_MESSAGE

    def should_handoff(self, user_text: str) -> bool:
        """True when the user text contains a configured handoff keyword (case-insensitive)."""
        lowered = (user_text or "").lower()
        return any(k.strip() and k.strip().lower() in lowered for k in self.config.handoff_keywords)

    async def generate(self, messages: List[dict]) -> AIResponse:
        """
        Blocking completion. Model errors are returned in ``AIResponse.error``, never raised.
        """
        try:
            content, tokens = await self.client.complete(
                self.config.system_prompt,
                messages,
                self.config.temperature,
                self.config.max_tokens,
            )
        except Exception as e:
            logger.error(f"AI generation error: {e}")
            return AIResponse(content="", error=str(e) or e.__class__.__name__)

        clean, handoff = strip_handoff_marker(content)
        return AIResponse(content=clean, tokens_used=tokens, handoff_to_human=handoff)

    def stream(self, messages: List[dict], cancel_token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        """Incremental completion; raises from the iterator on model errors."""
        return self.client.stream(
            self.config.system_prompt,
            messages,
            self.config.temperature,
            self.config.max_tokens,
            cancel_token,
        )
