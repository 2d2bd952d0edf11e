"""
Webhook Signature Tests.

============================================================
PURPOSE
============================================================
Tests for signature, signed-token and bearer-token checks.

TEST CATEGORIES:
- Header parsing
- Validity window
- Digest comparison
- Masking
- Signed tokens
- Bearer tokens

============================================================
"""

import jwt
import pytest

from settlement_engine import (
    InvalidSignatureError,
    decode_signed_token,
    parse_signature_header,
    sign_payload,
    verify_bearer_token,
    verify_signature,
)
from settlement_engine.signatures import compute_signature, mask_value


SECRET = "wk_test_secret"
BODY = b'{"type":"transaction_updated","data":{"id":"abc"}}'
NOW = 1_770_000_000


# ============================================================
# HEADER PARSING TESTS
# ============================================================

class TestParseSignatureHeader:
    """Tests for parse_signature_header."""

    def test_parses_timestamp_and_digest(self):
        parsed = parse_signature_header("t=1700000000,s=deadbeef")

        assert parsed.timestamp == 1700000000
        assert parsed.signature == "deadbeef"

    def test_tolerates_whitespace_and_order(self):
        parsed = parse_signature_header(" s=cafe , t=42 ")

        assert parsed.timestamp == 42
        assert parsed.signature == "cafe"

    @pytest.mark.parametrize("header", [None, "", "t=1", "s=abc", "t=abc,s=def", "garbage"])
    def test_rejects_bad_headers(self, header):
        with pytest.raises(InvalidSignatureError):
            parse_signature_header(header)


# ============================================================
# VERIFICATION TESTS
# ============================================================

class TestVerifySignature:
    """Tests for verify_signature."""

    def test_valid_signature(self):
        header = sign_payload(SECRET, NOW, BODY)

        parsed = verify_signature(BODY, header, SECRET, now_timestamp=NOW + 5, tolerance_seconds=30)

        assert parsed.timestamp == NOW

    def test_str_and_bytes_payloads_agree(self):
        assert compute_signature(SECRET, NOW, BODY) == compute_signature(SECRET, NOW, BODY.decode())

    def test_uppercase_digest_accepted(self):
        header = f"t={NOW},s={compute_signature(SECRET, NOW, BODY).upper()}"

        verify_signature(BODY, header, SECRET, now_timestamp=NOW, tolerance_seconds=30)

    def test_stale_signature_rejected(self):
        """Deliveries older than the window are refused outright."""
        header = sign_payload(SECRET, NOW, BODY)

        with pytest.raises(InvalidSignatureError, match="validity window"):
            verify_signature(BODY, header, SECRET, now_timestamp=NOW + 31, tolerance_seconds=30)

    def test_edge_of_window_accepted(self):
        header = sign_payload(SECRET, NOW, BODY)

        verify_signature(BODY, header, SECRET, now_timestamp=NOW + 30, tolerance_seconds=30)

    def test_future_signature_rejected(self):
        header = sign_payload(SECRET, NOW + 120, BODY)

        with pytest.raises(InvalidSignatureError, match="future"):
            verify_signature(BODY, header, SECRET, now_timestamp=NOW, tolerance_seconds=30)

    def test_tampered_body_rejected(self):
        header = sign_payload(SECRET, NOW, BODY)

        with pytest.raises(InvalidSignatureError, match="mismatch"):
            verify_signature(BODY + b" ", header, SECRET, now_timestamp=NOW, tolerance_seconds=30)

    def test_wrong_secret_rejected(self):
        header = sign_payload("other_secret", NOW, BODY)

        with pytest.raises(InvalidSignatureError):
            verify_signature(BODY, header, SECRET, now_timestamp=NOW, tolerance_seconds=30)

    def test_missing_header_rejected(self):
        with pytest.raises(InvalidSignatureError, match="Missing"):
            verify_signature(BODY, None, SECRET, now_timestamp=NOW, tolerance_seconds=30)


# ============================================================
# MASKING TESTS
# ============================================================

class TestMasking:
    """Tests for signature masking in logs."""

    def test_mask_long_value(self):
        assert mask_value("abcdef123456") == "abcd...***"

    @pytest.mark.parametrize("value", [None, "", "abc", "abcd"])
    def test_mask_short_value(self, value):
        assert mask_value(value) == "***"


# ============================================================
# SIGNED TOKEN TESTS
# ============================================================

TOKEN_SECRET = "tk_test_partner_access_token_000000"


class TestDecodeSignedToken:
    """Tests for decode_signed_token."""

    def test_returns_claims(self):
        token = jwt.encode({"eventID": "evt-1", "webhookData": {"id": "o1"}}, TOKEN_SECRET, algorithm="HS256")

        claims = decode_signed_token(token, TOKEN_SECRET)

        assert claims["webhookData"] == {"id": "o1"}

    def test_other_key_rejected(self):
        token = jwt.encode({"eventID": "evt-1"}, "tk_another_partner_access_token_00", algorithm="HS256")

        with pytest.raises(InvalidSignatureError, match="rejected"):
            decode_signed_token(token, TOKEN_SECRET)

    def test_expired_token_rejected(self):
        token = jwt.encode({"eventID": "evt-1", "exp": 1_000}, TOKEN_SECRET, algorithm="HS256")

        with pytest.raises(InvalidSignatureError):
            decode_signed_token(token, TOKEN_SECRET)

    def test_unsigned_token_rejected(self):
        token = jwt.encode({"eventID": "evt-1"}, None, algorithm="none")

        with pytest.raises(InvalidSignatureError):
            decode_signed_token(token, TOKEN_SECRET)

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, token):
        with pytest.raises(InvalidSignatureError, match="Missing"):
            decode_signed_token(token, TOKEN_SECRET)


# ============================================================
# BEARER TOKEN TESTS
# ============================================================

class TestVerifyBearerToken:
    """Tests for verify_bearer_token."""

    def test_matching_token(self):
        verify_bearer_token("Bearer helio-shared", "helio-shared")

    def test_scheme_is_case_insensitive(self):
        verify_bearer_token("bearer helio-shared", "helio-shared")

    def test_mismatch(self):
        with pytest.raises(InvalidSignatureError, match="mismatch"):
            verify_bearer_token("Bearer guessed", "helio-shared")

    @pytest.mark.parametrize("header", [None, "", "helio-shared", "Basic helio-shared"])
    def test_malformed_header(self, header):
        with pytest.raises(InvalidSignatureError):
            verify_bearer_token(header, "helio-shared")
