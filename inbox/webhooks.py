import json
import logging
from dataclasses import dataclass
from typing import Annotated, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from inbox import storage
from inbox.config import Settings, settings
from inbox.dependencies import get_media_relay, get_orchestrator, get_outbound_sender
from inbox.ingestion import WebhookIngestor
from inbox.logging_utils import log_webhook_data
from inbox.media import MediaRelay
from inbox.metrics import record_webhook_outcome
from inbox.normalizers import normalize
from inbox.orchestrator import AutoReplyOrchestrator
from inbox.outbound import OutboundSender
from inbox.schemas import ChannelConfig, ErrorResponse, WebhookResponse
from inbox.signatures import verify_signature, verify_subscription
from inbox.storage import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@dataclass(frozen=True)
class Provider:
    """A webhook provider: its channel type, signature headers (first present wins) and secret setting."""
    name: str
    channel_type: str
    signature_headers: Tuple[str, ...]
    secret_setting: str

    def secret(self, settings: Settings) -> str:
        return getattr(settings, self.secret_setting)


PROVIDERS: Dict[str, Provider] = {
    "whatsapp": Provider("whatsapp", "whatsapp", ("X-Hub-Signature-256",), "WHATSAPP_APP_SECRET"),
    "facebook": Provider("facebook", "facebook", ("X-Hub-Signature-256",), "META_APP_SECRET"),
    "instagram": Provider("instagram", "instagram", ("X-Hub-Signature-256",), "META_APP_SECRET"),
    "tiktok": Provider(
        "tiktok",
        "tiktok",
        ("TikTok-Signature", "X-TikTok-Signature-256", "X-TT-Signature", "X-Hub-Signature-256"),
        "TIKTOK_APP_SECRET",
    ),
}


def get_provider(provider: str) -> Provider:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown provider")
    return PROVIDERS[provider]


def _signature_header(request: Request, provider: Provider) -> Optional[str]:
    for name in provider.signature_headers:
        value = request.headers.get(name)
        if value:
            return value
    return None


def _ignored(request: Request, provider: str, why: str) -> WebhookResponse:
    logger.info(f"Webhook ignored: provider={provider}, reason={why}")
    record_webhook_outcome(provider, "ignored")
    log_webhook_data(request, provider, "ignored")
    return WebhookResponse(status="ignored")


@router.get(
    "/api/{provider}/webhook",
    response_class=PlainTextResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def verify_webhook(
    provider: str,
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
    db: Session = Depends(get_db),
) -> PlainTextResponse:
    """
    Subscription handshake: echo `hub.challenge` when `hub.verify_token`
    matches the active channel's verify_token.
    """
    profile = get_provider(provider)
    channel = storage.get_active_channel(db, profile.channel_type)
    verify_token = ChannelConfig.from_channel(channel).verify_token if channel else None

    challenge = verify_subscription(hub_mode, hub_verify_token, hub_challenge, verify_token)
    if challenge is None:
        logger.warning(f"Webhook verification failed: provider={provider}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")

    logger.info(f"Webhook verified: provider={provider}")
    return PlainTextResponse(challenge)


@router.post(
    "/api/{provider}/webhook",
    response_model=WebhookResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Invalid signature"},
        404: {"model": ErrorResponse, "description": "Unknown provider"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    },
)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    relay: MediaRelay = Depends(get_media_relay),
    orchestrator: AutoReplyOrchestrator = Depends(get_orchestrator),
    sender: OutboundSender = Depends(get_outbound_sender),
) -> WebhookResponse:
    """
    Ingest one provider webhook delivery.

    - Verifies the provider signature over the raw body (403 on failure)
    - Normalizes the payload into status updates, messages and read receipts
    - Routes them to the first active channel of the provider's type
    - Sends AI replies back through the provider API where one exists
    - Answers {"status": "ignored"} for unparseable payloads, payloads with
      no events, or when no channel is active
    """
    profile = get_provider(provider)
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes, provider={provider}")

    result = verify_signature(
        raw_body,
        _signature_header(request, profile),
        profile.secret(settings),
        settings.SIGNATURE_TOLERANCE_SECONDS,
    )
    if not result.accepted:
        record_webhook_outcome(provider, "invalid_signature")
        log_webhook_data(request, provider, "invalid_signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"Invalid webhook JSON: {e}")
        return _ignored(request, provider, "invalid_json")

    try:
        events = normalize(provider, payload)
    except Exception:
        logger.exception(f"Unrecognized {provider} payload shape")
        return _ignored(request, provider, "unrecognized_payload")

    if not events:
        return _ignored(request, provider, "no_events")

    channel = storage.get_active_channel(db, profile.channel_type)
    if channel is None:
        logger.warning(f"No active {profile.channel_type} channel configured")
        return _ignored(request, provider, "no_active_channel")

    try:
        summary = await WebhookIngestor(relay, orchestrator, sender).process(db, provider, channel, events)
    except Exception:
        logger.exception(f"Webhook processing failed: provider={provider}")
        record_webhook_outcome(provider, "error")
        log_webhook_data(request, provider, "error")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")

    record_webhook_outcome(provider, "ok")
    log_webhook_data(request, provider, "ok", summary.as_log_fields())
    return WebhookResponse(status="ok")
