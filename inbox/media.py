"""
Media relay: copy provider-hosted attachments into durable storage.

Provider media URLs are short-lived (and for WhatsApp, behind a bearer
token), so every inbound attachment is downloaded once and re-uploaded
under ``{channel_type}/{media_type}/<uuid><ext>``.
"""

import abc
import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

import boto3
import httpx
from botocore.client import Config

from inbox.config import Settings, settings as default_settings
from inbox.metrics import record_media_relay
from inbox.normalizers import classify_media

logger = logging.getLogger(__name__)

MEDIA_UPLOAD_ERROR_TEXT = "[Error uploading media]"


class MediaRelayError(Exception):
    """Raised when an attachment cannot be fetched or stored."""


@dataclass
class StoredMedia:
    url: str
    mime: str
    size: int


# =============================================================================
# Object Storage
# =============================================================================

class ObjectStorage(abc.ABC):
    @abc.abstractmethod
    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under `key` and return their long-lived public URL."""


class LocalFilesystemStorage(ObjectStorage):
    def __init__(self, root: str, public_base_url: str):
        self.root = os.path.abspath(root)
        self.public_base_url = public_base_url.rstrip("/")
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = key.strip("/").replace("..", "")
        return os.path.join(self.root, safe)

    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return f"{self.public_base_url}/{quote(key)}"


class S3Storage(ObjectStorage):
    def __init__(self, settings: Settings):
        session = boto3.session.Session(
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            region_name=settings.S3_REGION,
        )
        self.s3 = session.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            config=Config(signature_version="s3v4"),
        )
        self.bucket = settings.S3_BUCKET
        self.public_base_url = settings.MEDIA_PUBLIC_BASE_URL.rstrip("/")

    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return f"{self.public_base_url}/{quote(key)}"


def build_object_storage(settings: Settings = default_settings) -> ObjectStorage:
    backend = settings.MEDIA_STORAGE_BACKEND.lower()
    if backend == "s3":
        return S3Storage(settings)
    if backend == "local":
        return LocalFilesystemStorage(settings.MEDIA_LOCAL_ROOT, settings.MEDIA_PUBLIC_BASE_URL)
    raise ValueError(f"Unknown MEDIA_STORAGE_BACKEND: {settings.MEDIA_STORAGE_BACKEND}")


# =============================================================================
# Relay
# =============================================================================

class MediaRelay:
    """
    Downloads provider media and re-uploads it to object storage.

    Args:
        storage: Destination object storage
        transport: Optional httpx transport (tests pass an httpx.MockTransport)
        settings: Application settings
    """

    def __init__(
        self,
        storage: ObjectStorage,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Settings = default_settings,
    ):
        self.storage = storage
        self.transport = transport
        self.settings = settings

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=self.settings.MEDIA_DOWNLOAD_TIMEOUT,
            follow_redirects=True,
        )

    async def resolve_whatsapp_media_url(self, media_id: str, access_token: Optional[str]) -> str:
        """Look up the temporary download URL of a WhatsApp media id."""
        if not access_token:
            raise MediaRelayError("WhatsApp channel has no access_token configured")

        url = f"{self.settings.WHATSAPP_GRAPH_API_URL.rstrip('/')}/{media_id}"
        try:
            async with self._client() as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MediaRelayError(f"WhatsApp media lookup failed for {media_id}: {e}") from e

        if not data.get("url"):
            raise MediaRelayError(f"WhatsApp media {media_id} has no download url")
        return data["url"]

    async def _download(self, source_url: str, headers: dict) -> Tuple[bytes, Optional[str]]:
        """Stream the body, giving up as soon as it exceeds MEDIA_MAX_BYTES."""
        limit = self.settings.MEDIA_MAX_BYTES
        async with self._client() as client:
            async with client.stream("GET", source_url, headers=headers) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise MediaRelayError(f"Media too large: {declared} bytes declared")

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > limit:
                        raise MediaRelayError(f"Media too large: more than {limit} bytes")
                return bytes(buffer), response.headers.get("content-type")

    async def relay(
        self,
        source_url: str,
        declared_type: str,
        channel_type: str,
        access_token: Optional[str] = None,
    ) -> StoredMedia:
        """
        Copy one attachment into durable storage.

        Raises:
            MediaRelayError: download, size check or upload failed
        """
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        try:
            data, content_type = await self._download(source_url, headers)
        except httpx.HTTPError as e:
            record_media_relay("failed")
            raise MediaRelayError(f"Media download failed: {e}") from e
        except MediaRelayError:
            record_media_relay("failed")
            raise

        mime = (content_type or "").split(";")[0].strip().lower()
        if not mime:
            mime = declared_type if "/" in (declared_type or "") else "application/octet-stream"

        media_type = classify_media(declared_type).value
        extension = mimetypes.guess_extension(mime) or ""
        key = f"{channel_type}/{media_type}/{uuid.uuid4().hex}{extension}"

        try:
            url = self.storage.put_bytes(key, data, mime)
        except Exception as e:
            record_media_relay("failed")
            raise MediaRelayError(f"Media upload failed for {key}: {e}") from e

        record_media_relay("stored")
        logger.info(f"Media stored: key={key}, mime={mime}, size={len(data)}")
        return StoredMedia(url=url, mime=mime, size=len(data))
