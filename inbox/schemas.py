"""
Pydantic schemas for request/response validation.

This module contains:
- Channel configuration models (read from the channel's config blob)
- Request models for the website widget API
- Response models for webhook, widget and health endpoints
- Request and response models of the knowledge admin API
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Channel Configuration Models
# =============================================================================

class AIConfig(BaseModel):
    """
    AI auto-reply settings of a channel.

    response_mode:
    - ai_only: the assistant answers every message
    - hybrid: the assistant answers until a human takes over
    - agent_only: never answer automatically
    """
    model_config = ConfigDict(extra="ignore")

    provider: str = Field(default="openai", description="openai, anthropic or google")
    model: str = Field(default="gpt-4o-mini")
    api_key_encrypted: Optional[str] = Field(default=None, description="Fernet token of the API key")
    response_mode: Literal["ai_only", "agent_only", "hybrid"] = "hybrid"
    system_prompt: str = ""
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=500, ge=1)
    auto_reply: bool = True
    auto_reply_delay: float = Field(default=0.0, ge=0.0, description="Seconds to wait before answering")
    handoff_keywords: List[str] = Field(default_factory=list)
    knowledge_base_enabled: bool = False
    fallback_message: Optional[str] = None


class ChannelConfig(BaseModel):
    """Typed view over the parts of a channel config blob the core reads."""
    model_config = ConfigDict(extra="allow")

    verify_token: Optional[str] = None
    access_token: Optional[str] = None
    phone_number_id: Optional[str] = Field(default=None, description="WhatsApp Cloud API sender number id")
    business_account_id: Optional[str] = Field(default=None, description="Instagram professional account id")
    widget_token: Optional[str] = None
    ai_enabled: bool = False
    ai_config: Optional[AIConfig] = None

    # Website widget appearance
    welcome_title: str = "Chat with us"
    welcome_message: str = "Hi! How can we help you?"
    widget_color: str = "#3B82F6"
    position: Literal["left", "right"] = "right"
    reply_time: str = "few_minutes"
    online_status: str = "auto"
    pre_chat_form_enabled: bool = True

    @classmethod
    def from_channel(cls, channel) -> "ChannelConfig":
        return cls.model_validate(channel.config or {})

    @property
    def active_ai_config(self) -> Optional[AIConfig]:
        """The AI config when AI is switched on for the channel, else None."""
        if self.ai_enabled and self.ai_config is not None:
            return self.ai_config
        return None


# =============================================================================
# Widget Request Models
# =============================================================================

class VisitorInfo(BaseModel):
    """Pre-chat form data collected by the widget."""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class WidgetMessageRequest(BaseModel):
    """
    Body of POST /api/chat/widget/message and /api/chat/widget/ai-stream.
    """
    token: str = Field(..., min_length=1, description="Widget token of the website channel")
    message: str = Field(..., min_length=1, max_length=4096, description="Visitor message text")
    visitor_id: Optional[str] = Field(None, description="Stable id of the visitor's browser")
    visitor_info: Optional[VisitorInfo] = None
    conversation_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "token": "wgt_123",
                    "message": "Hello",
                    "visitor_id": "v-42",
                    "visitor_info": {"name": "Ana"},
                }
            ]
        }
    }


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    status: Literal["ok", "ignored"] = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class WidgetConfigResponse(BaseModel):
    """Public appearance settings of a website widget."""
    welcome_title: str
    welcome_message: str
    widget_color: str
    position: str
    reply_time: str
    online_status: str
    pre_chat_form_enabled: bool
    ai_enabled: bool


class WidgetMessageResponse(BaseModel):
    success: bool = True
    conversation_id: str
    visitor_id: str
    reply: Optional[str] = None
    handoff_to_human: bool = False


class WidgetConversationResponse(BaseModel):
    """The visitor's live conversation on the channel; all fields null when there is none."""
    conversation_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class AIDisabledResponse(BaseModel):
    """Short-circuit answer of the ai-stream endpoint when no stream is produced."""
    success: bool = True
    conversation_id: str
    visitor_id: str
    ai_enabled: bool = False
    reason: Optional[str] = None


class MessageResponse(BaseModel):
    """
    Response model for a single message.
    Maps database fields to API response format.
    """
    id: str
    conversation_id: str
    body: Optional[str] = None
    type: str
    sender_type: str
    sender_id: Optional[str] = None
    media_url: Optional[str] = None
    media_mime: Optional[str] = None
    media_size: Optional[int] = None
    media_name: Optional[str] = None
    status: Optional[str] = None
    created_at: datetime

    model_config = {
        "from_attributes": True,  # Allow creating from ORM objects
    }


class MessagesListResponse(BaseModel):
    """Response model for GET /api/chat/widget/messages."""
    messages: List[MessageResponse] = Field(default_factory=list)


# =============================================================================
# Knowledge Admin Models
# =============================================================================

class KnowledgeDocumentRequest(BaseModel):
    """Body of POST /api/knowledge/documents."""
    channel_id: str = Field(..., min_length=1, description="Channel the document grounds replies for")
    title: str = Field(default="", max_length=255)
    text: str = Field(..., min_length=1, description="Plain document text, chunked by tokens")


class KnowledgeDocumentResponse(BaseModel):
    channel_id: str
    title: str
    chunks: int = Field(..., description="Number of chunks stored")


class KnowledgeSearchRequest(BaseModel):
    """Body of POST /api/knowledge/search."""
    channel_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    top_k: Optional[int] = Field(default=None, ge=1, le=20)


class KnowledgeChunkResponse(BaseModel):
    id: str
    title: Optional[str] = None
    content: str

    model_config = {
        "from_attributes": True,
    }


class KnowledgeSearchResponse(BaseModel):
    results: List[KnowledgeChunkResponse] = Field(default_factory=list)
