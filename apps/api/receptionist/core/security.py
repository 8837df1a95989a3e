"""Webhook signature and bearer token primitives."""
from __future__ import annotations

import hashlib
import hmac
import secrets
import time

from .errors import AuthError

# Compared against when an agent id is unknown so lookups and misses take the same path.
_DUMMY_TOKEN_HASH = hashlib.sha256(b"unknown-agent").hexdigest()


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Return hex HMAC-SHA256 over ``<timestamp>.<raw_body>``."""

    message = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    *,
    secret: str,
    signature: str | None,
    timestamp: str | None,
    raw_body: bytes,
    skew_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Raise ``AuthError`` unless the signature matches and the timestamp is fresh.

    The body must be the byte-exact payload as received. A skew of exactly
    ``skew_seconds`` in either direction is still accepted.
    """

    if not secret or not signature or not timestamp:
        raise AuthError("auth/invalid-signature")

    try:
        sent_at = int(timestamp.strip())
    except ValueError as exc:
        raise AuthError("auth/invalid-signature") from exc

    current = int(now if now is not None else time.time())
    if abs(current - sent_at) > skew_seconds:
        raise AuthError("auth/stale-timestamp")

    expected = compute_signature(secret, timestamp.strip(), raw_body)
    if not hmac.compare_digest(expected, signature.strip()):
        raise AuthError("auth/invalid-signature")


def hash_token(token: str) -> str:
    """Return the stored representation of an agent bearer token."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def token_matches(token: str, stored_hash: str | None) -> bool:
    """Constant-time comparison of a presented token with its stored hash."""

    candidate = hash_token(token)
    return hmac.compare_digest(candidate, stored_hash or _DUMMY_TOKEN_HASH) and stored_hash is not None


def parse_bearer(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
