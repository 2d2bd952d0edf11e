"""
Settlement Engine - Webhook Signatures.

============================================================
PURPOSE
============================================================
Authenticity checks for fiat-provider webhooks.

SCHEMES:
- Signed header (MoonPay):
    t=<unix seconds>,s=<hex digest>
    digest = HMAC_SHA256(secret, "<t>.<raw body>")
- Signed token (Transak):
    body is {"data": "<HS256 JWT>"}, signed with the partner
    access token; the claims are the event
- Bearer token (Helio):
    Authorization: Bearer <shared token>

SECURITY REQUIREMENTS:
1. Constant-time digest comparison
2. Reject timestamps outside the tolerance window
3. NEVER log raw signatures or secrets

============================================================
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import jwt

from .types import InvalidSignatureError


logger = logging.getLogger(__name__)


@dataclass
class SignatureHeader:
    """Parsed signature header."""

    timestamp: int
    signature: str


def mask_value(value: Optional[str], show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def _as_bytes(payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


def parse_signature_header(header: Optional[str]) -> SignatureHeader:
    """
    Parse "t=...,s=..." into its parts.

    Raises:
        InvalidSignatureError: header missing or unparseable
    """
    if not header:
        raise InvalidSignatureError("Missing signature header")

    timestamp = None
    signature = None
    for element in header.split(","):
        prefix, _, value = element.strip().partition("=")
        if prefix == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignatureError("Signature timestamp is not an integer")
        elif prefix == "s":
            signature = value

    if timestamp is None or not signature:
        raise InvalidSignatureError("Signature header missing timestamp or digest")

    return SignatureHeader(timestamp=timestamp, signature=signature)


def compute_signature(secret: str, timestamp: int, payload: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of "<timestamp>.<payload>"."""
    message = str(timestamp).encode("utf-8") + b"." + _as_bytes(payload)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_payload(secret: str, timestamp: int, payload: Union[str, bytes]) -> str:
    """Build a signature header for a payload."""
    return f"t={timestamp},s={compute_signature(secret, timestamp, payload)}"


def verify_signature(
    payload: Union[str, bytes],
    header: Optional[str],
    secret: str,
    now_timestamp: float,
    tolerance_seconds: int,
) -> SignatureHeader:
    """
    Verify a webhook signature.

    Args:
        payload: Raw request body
        header: Signature header value
        secret: Shared secret
        now_timestamp: Current Unix time
        tolerance_seconds: Validity window

    Returns:
        Parsed header on success

    Raises:
        InvalidSignatureError: on any failure
    """
    parsed = parse_signature_header(header)

    age = now_timestamp - parsed.timestamp
    if age > tolerance_seconds:
        logger.warning(f"Webhook signature too old: age={age:.0f}s tolerance={tolerance_seconds}s")
        raise InvalidSignatureError(f"Signature timestamp outside validity window ({age:.0f}s old)")
    if age < -tolerance_seconds:
        logger.warning(f"Webhook signature from the future: skew={-age:.0f}s")
        raise InvalidSignatureError("Signature timestamp is in the future")

    expected = compute_signature(secret, parsed.timestamp, payload)
    if not hmac.compare_digest(expected, parsed.signature.lower()):
        logger.warning(f"Webhook signature mismatch: received={mask_value(parsed.signature)}")
        raise InvalidSignatureError("Signature digest mismatch")

    return parsed


# ============================================================
# SIGNED TOKENS
# ============================================================

TOKEN_ALGORITHMS = ["HS256"]


def decode_signed_token(token: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Verify an HS256 token and return its claims.

    Raises:
        InvalidSignatureError: token missing, tampered, expired or
            signed with another key
    """
    if not token:
        raise InvalidSignatureError("Missing signed token")

    try:
        return jwt.decode(token, secret, algorithms=TOKEN_ALGORITHMS)
    except jwt.InvalidTokenError as e:
        logger.warning(f"Webhook token rejected: {type(e).__name__}")
        raise InvalidSignatureError(f"Signed token rejected: {e}")


def verify_bearer_token(header: Optional[str], token: str) -> None:
    """
    Check an "Authorization: Bearer <token>" header.

    Raises:
        InvalidSignatureError: header missing or token mismatch
    """
    if not header:
        raise InvalidSignatureError("Missing authorization header")

    scheme, _, presented = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not presented:
        raise InvalidSignatureError("Authorization header is not a bearer token")

    if not hmac.compare_digest(presented.strip().encode("utf-8"), token.encode("utf-8")):
        logger.warning(f"Webhook bearer token mismatch: received={mask_value(presented)}")
        raise InvalidSignatureError("Bearer token mismatch")
