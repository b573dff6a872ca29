"""
Webhook authenticity checks.

Two HMAC-SHA256 header shapes are accepted:
- timestamped: ``t=<unix_seconds>,s=<hex>`` signed over ``"{t}.{raw_body}"``,
  rejected outside the replay window even when the digest matches
- direct: ``<hex>`` or ``sha256=<hex>`` signed over the raw body

Subscription handshakes (``hub.mode=subscribe``) are a plain token comparison
against the channel's stored ``verify_token``.
"""

import enum
import hmac
import hashlib
import logging
import re
import time
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

_TIMESTAMPED_RE = re.compile(r"\bt=", re.IGNORECASE)
_SIGNATURE_PART_RE = re.compile(r"\bs=", re.IGNORECASE)


class SignatureResult(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    SKIPPED = "skipped"

    @property
    def accepted(self) -> bool:
        return self is not SignatureResult.INVALID


def compute_signature(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """
    Hex HMAC-SHA256 of the body, or of ``"{timestamp}.{body}"`` when a timestamp is given.
    """
    payload = body if timestamp is None else f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _strip_prefix(value: str) -> str:
    value = value.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256="):]
    return value.strip()


def _digest_equal(expected: str, received: str) -> bool:
    if not received.isascii():
        return False
    return hmac.compare_digest(expected, received.lower())


def _parse_timestamped(header: str) -> tuple[Optional[str], Optional[str]]:
    t = s = None
    for part in header.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        if key == "t":
            t = value.strip()
        elif key == "s":
            s = value.strip()
    return t, s


def verify_signature(
    body: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> SignatureResult:
    """
    Verify a webhook signature header against the raw request body.

    Args:
        body: Raw request body bytes, exactly as received
        header: Signature header value (None when absent)
        secret: Shared secret of the provider (empty when not configured)
        tolerance_seconds: Replay window of the timestamped scheme
        now: Current unix time, for tests

    Returns:
        VALID, INVALID, or SKIPPED when there is nothing to verify with
    """
    if not secret:
        if header:
            logger.warning("Signature header present but no secret configured, skipping verification")
        return SignatureResult.SKIPPED

    if not header:
        logger.warning("Missing signature header")
        return SignatureResult.INVALID

    if _TIMESTAMPED_RE.search(header) and _SIGNATURE_PART_RE.search(header):
        t, s = _parse_timestamped(header)
        if not t or not s:
            logger.warning("Malformed timestamped signature header")
            return SignatureResult.INVALID
        try:
            timestamp = int(t)
        except ValueError:
            logger.warning("Non-numeric signature timestamp")
            return SignatureResult.INVALID

        expected = compute_signature(body, secret, timestamp=timestamp)
        if not _digest_equal(expected, _strip_prefix(s)):
            logger.warning("Invalid timestamped signature")
            return SignatureResult.INVALID

        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            logger.warning(f"Signature timestamp outside tolerance: t={timestamp}")
            return SignatureResult.INVALID
        return SignatureResult.VALID

    expected = compute_signature(body, secret)
    if _digest_equal(expected, _strip_prefix(header)):
        return SignatureResult.VALID

    logger.warning("Invalid signature")
    return SignatureResult.INVALID


def verify_subscription(
    mode: Optional[str], token: Optional[str], challenge: Optional[str], verify_token: Optional[str]
) -> Optional[str]:
    """
    Check a GET subscription handshake.

    Returns:
        The challenge to echo back on success, None otherwise
    """
    if mode != "subscribe" or not token or not verify_token:
        return None
    if token != verify_token:
        logger.warning("Subscription verify token mismatch")
        return None
    return challenge or ""
