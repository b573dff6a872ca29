from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - empty means "not configured" for that provider
    WHATSAPP_APP_SECRET: str = ""
    META_APP_SECRET: str = ""
    TIKTOK_APP_SECRET: str = ""
    SIGNATURE_TOLERANCE_SECONDS: int = 300

    # Fernet key for channel AI API keys
    ENCRYPTION_KEY: str = ""

    # Media relay
    MEDIA_STORAGE_BACKEND: str = "local"
    MEDIA_LOCAL_ROOT: str = "./media"
    MEDIA_PUBLIC_BASE_URL: str = "http://localhost:8000/media"
    MEDIA_MAX_BYTES: int = 25 * 1024 * 1024
    MEDIA_DOWNLOAD_TIMEOUT: float = 30.0
    WHATSAPP_GRAPH_API_URL: str = "https://graph.facebook.com/v20.0"
    S3_BUCKET: str = ""
    S3_REGION: str = "us-east-1"
    S3_ENDPOINT_URL: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None

    # AI auto-reply
    AI_HISTORY_LIMIT: int = 10
    AI_REQUEST_TIMEOUT: float = 60.0
    KNOWLEDGE_TOP_K: int = 3
    KNOWLEDGE_MIN_SCORE: float = 0.3
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_API_KEY: str = ""
    DEFAULT_FALLBACK_MESSAGE: str = (
        "Sorry, I could not process your message. An agent will assist you shortly."
    )
    HANDOFF_NOTICE_MESSAGE: str = (
        "I understand you would prefer to talk to a human agent. Transferring your conversation..."
    )

    # Knowledge base ingestion
    KNOWLEDGE_ENCODING: str = "cl100k_base"
    KNOWLEDGE_CHUNK_TOKENS: int = 350
    KNOWLEDGE_CHUNK_OVERLAP: int = 60
    ADMIN_API_KEY: str = ""

    # Outbound replies to provider channels
    META_GRAPH_API_URL: str = "https://graph.facebook.com/v20.0"
    INSTAGRAM_GRAPH_API_URL: str = "https://graph.instagram.com/v22.0"
    OUTBOUND_TIMEOUT: float = 15.0

    # Widget push stream
    WIDGET_STREAM_POLL_SECONDS: float = 1.0
    WIDGET_STREAM_HEARTBEAT_SECONDS: float = 30.0
    WIDGET_STREAM_MAX_SECONDS: float = 300.0

    # Human operator notifications
    HANDOFF_NOTIFY_URL: str = ""
    HANDOFF_NOTIFY_TIMEOUT: float = 10.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
