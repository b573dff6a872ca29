"""
Tests for webhook signature verification and subscription handshakes.
"""

import time

import pytest

from inbox.signatures import SignatureResult, compute_signature, verify_signature, verify_subscription

SECRET = "shared-secret"
BODY = b'{"events":[{"sender":{"id":"123"},"message":{"text":"Hi"}}]}'


def timestamped_header(body: bytes, secret: str, timestamp: int) -> str:
    return f"t={timestamp},s={compute_signature(body, secret, timestamp=timestamp)}"


class TestDirectScheme:
    def test_raw_hex_digest_is_valid(self):
        header = compute_signature(BODY, SECRET)
        assert verify_signature(BODY, header, SECRET) is SignatureResult.VALID

    def test_sha256_prefix_is_stripped(self):
        header = "sha256=" + compute_signature(BODY, SECRET)
        assert verify_signature(BODY, header, SECRET) is SignatureResult.VALID

    def test_uppercase_digest_is_accepted(self):
        header = "sha256=" + compute_signature(BODY, SECRET).upper()
        assert verify_signature(BODY, header, SECRET) is SignatureResult.VALID

    def test_any_flipped_body_byte_invalidates(self):
        header = compute_signature(BODY, SECRET)
        for index in range(len(BODY)):
            tampered = bytearray(BODY)
            tampered[index] ^= 0x01
            assert verify_signature(bytes(tampered), header, SECRET) is SignatureResult.INVALID

    def test_wrong_secret_is_invalid(self):
        header = compute_signature(BODY, "other-secret")
        assert verify_signature(BODY, header, SECRET) is SignatureResult.INVALID

    def test_non_ascii_header_is_invalid_not_an_error(self):
        assert verify_signature(BODY, "sha256=ñññ", SECRET) is SignatureResult.INVALID


class TestTimestampedScheme:
    def test_fresh_signature_is_valid(self):
        now = int(time.time())
        header = timestamped_header(BODY, SECRET, now)
        assert verify_signature(BODY, header, SECRET, now=now + 10) is SignatureResult.VALID

    def test_signature_part_may_carry_prefix(self):
        now = int(time.time())
        digest = compute_signature(BODY, SECRET, timestamp=now)
        header = f"t={now},s=sha256={digest}"
        assert verify_signature(BODY, header, SECRET, now=now) is SignatureResult.VALID

    @pytest.mark.parametrize("skew", [301, -301, 3600])
    def test_replayed_signature_is_rejected(self, skew):
        signed_at = 1_700_000_000
        header = timestamped_header(BODY, SECRET, signed_at)
        assert verify_signature(BODY, header, SECRET, now=signed_at + skew) is SignatureResult.INVALID

    def test_edge_of_window_is_accepted(self):
        signed_at = 1_700_000_000
        header = timestamped_header(BODY, SECRET, signed_at)
        assert verify_signature(BODY, header, SECRET, now=signed_at + 300) is SignatureResult.VALID

    def test_tampered_body_is_rejected(self):
        now = int(time.time())
        header = timestamped_header(BODY, SECRET, now)
        assert verify_signature(BODY + b" ", header, SECRET, now=now) is SignatureResult.INVALID

    @pytest.mark.parametrize(
        "header",
        [
            "t=,s=abcdef",
            "t=12345,s=",
            "t=notanumber,s=abcdef",
        ],
    )
    def test_malformed_header_is_invalid(self, header):
        assert verify_signature(BODY, header, SECRET) is SignatureResult.INVALID

    def test_malformed_header_does_not_fall_back_to_direct_scheme(self):
        # The s= part alone is a valid direct digest, but t is unusable
        header = f"t=oops,s={compute_signature(BODY, SECRET)}"
        assert verify_signature(BODY, header, SECRET) is SignatureResult.INVALID


class TestUnconfigured:
    def test_no_secret_and_no_header_is_skipped(self):
        result = verify_signature(BODY, None, "")
        assert result is SignatureResult.SKIPPED
        assert result.accepted

    def test_header_without_secret_is_skipped(self):
        result = verify_signature(BODY, "sha256=deadbeef", "")
        assert result is SignatureResult.SKIPPED

    def test_secret_without_header_is_invalid(self):
        result = verify_signature(BODY, None, SECRET)
        assert result is SignatureResult.INVALID
        assert not result.accepted


class TestSubscriptionHandshake:
    def test_matching_token_echoes_challenge(self):
        assert verify_subscription("subscribe", "tok", "challenge-42", "tok") == "challenge-42"

    def test_wrong_token_fails(self):
        assert verify_subscription("subscribe", "nope", "challenge-42", "tok") is None

    def test_wrong_mode_fails(self):
        assert verify_subscription("unsubscribe", "tok", "challenge-42", "tok") is None

    def test_channel_without_verify_token_fails(self):
        assert verify_subscription("subscribe", "tok", "challenge-42", None) is None
