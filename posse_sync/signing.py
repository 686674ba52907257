"""HMAC signing helpers for webhooks and Ghost Admin API tokens.

Webhook signatures are HMAC-SHA256 over the raw, unparsed request body,
hex-encoded and optionally prefixed with "sha256=". Verification always
uses a constant-time comparison.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64encode
from typing import Callable

SIGNATURE_PREFIX = "sha256="


def sign_body(secret: str, raw_body: bytes) -> str:
    """Return the hex HMAC-SHA256 of raw_body keyed by secret."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    """Check a webhook signature header against the raw body.

    Returns False for a missing secret or signature rather than
    skipping verification.
    """
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = sign_body(secret, raw_body)
    return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("ascii", errors="replace"))


def build_ghost_jwt(
    admin_api_key: str,
    ttl: int = 300,
    clock: Callable[[], float] | None = None,
) -> str:
    """Build an HS256 JWT for Ghost Admin API authentication.

    Args:
        admin_api_key: Ghost admin key in "{id}:{secret}" format.
        ttl: Token lifetime in seconds (Ghost caps this at 5 minutes).
        clock: Time source (injectable for testing).

    Returns:
        Signed JWT string.

    Raises:
        ValueError: If the key format is invalid.
    """
    parts = admin_api_key.split(":")
    if len(parts) != 2:
        raise ValueError("Ghost admin_api_key must be in {id}:{secret} format")
    key_id, secret_hex = parts

    header = {"alg": "HS256", "typ": "JWT", "kid": key_id}
    now = int((clock or time.time)())
    payload = {"iat": now, "exp": now + ttl, "aud": "/admin/"}

    def _b64(data: bytes) -> str:
        return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

    header_b64 = _b64(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = _b64(json.dumps(payload, separators=(",", ":")).encode())

    signing_input = f"{header_b64}.{payload_b64}"
    signature = hmac.new(bytes.fromhex(secret_hex), signing_input.encode(), hashlib.sha256).digest()

    return f"{signing_input}.{_b64(signature)}"
