"""
Encryption of channel AI API keys at rest (Fernet).
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from inbox.config import settings

logger = logging.getLogger(__name__)


class KeyDecryptionError(Exception):
    """Raised when an encrypted API key cannot be decrypted."""


def _fernet(key: Optional[str] = None) -> Fernet:
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise KeyDecryptionError("ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as e:
        raise KeyDecryptionError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e


def encrypt_api_key(api_key: str, key: Optional[str] = None) -> str:
    if not api_key or not api_key.strip():
        return ""
    return _fernet(key).encrypt(api_key.strip().encode("utf-8")).decode("utf-8")


def decrypt_api_key(token: str, key: Optional[str] = None) -> str:
    """
    Decrypt a stored API key.

    Raises:
        KeyDecryptionError: missing/invalid ENCRYPTION_KEY or tampered token
    """
    if not token or not token.strip():
        return ""
    try:
        return _fernet(key).decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise KeyDecryptionError("API key token is invalid or was encrypted with another key") from e
