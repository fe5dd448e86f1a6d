"""Unsubscribe token and URL helpers."""

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from ..core.config import get_settings
from ..core.exceptions import ConfigurationError, UnsubscribeTokenError

TOKEN_VERSION = 1


@dataclass(frozen=True)
class UnsubscribeClaims:
    user_id: str
    email_address: str
    issued_at: int
    expires_at: int


def normalize_email(email_address: Optional[str]) -> str:
    return (email_address or "").strip().lower()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return _b64encode(digest)


def _secret() -> str:
    secret = get_settings().unsubscribe_secret
    if not secret:
        raise ConfigurationError("UNSUBSCRIBE_SECRET must be set to sign unsubscribe tokens")
    return secret


def generate_unsubscribe_token(user_id: str, email_address: str, now: Optional[int] = None) -> str:
    """Generate a signed, URL-safe unsubscribe token."""
    issued = int(now if now is not None else time.time())
    payload = {
        "v": TOKEN_VERSION,
        "uid": user_id,
        "email": normalize_email(email_address),
        "iat": issued,
        "exp": issued + get_settings().unsubscribe_token_ttl_days * 86400,
    }
    payload_b64 = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, _secret())}"


def parse_unsubscribe_token(token: str, now: Optional[int] = None) -> UnsubscribeClaims:
    """Verify an unsubscribe token and return its claims."""
    try:
        payload_b64, signature = token.split(".", 1)
    except ValueError:
        raise UnsubscribeTokenError("Malformed unsubscribe token")

    if not hmac.compare_digest(_sign(payload_b64, _secret()), signature):
        raise UnsubscribeTokenError("Invalid unsubscribe token signature")

    try:
        payload = json.loads(_b64decode(payload_b64))
    except (ValueError, UnicodeDecodeError) as e:
        raise UnsubscribeTokenError("Unreadable unsubscribe token", cause=e)

    if payload.get("v") != TOKEN_VERSION:
        raise UnsubscribeTokenError("Unsupported unsubscribe token version")

    current = int(now if now is not None else time.time())
    expires_at = payload.get("exp")
    if not isinstance(expires_at, int) or current > expires_at:
        raise UnsubscribeTokenError("Unsubscribe token has expired")

    user_id = payload.get("uid")
    email_address = normalize_email(payload.get("email"))
    if not user_id or not email_address:
        raise UnsubscribeTokenError("Unsubscribe token is missing its subject")

    return UnsubscribeClaims(
        user_id=str(user_id),
        email_address=email_address,
        issued_at=int(payload.get("iat", 0)),
        expires_at=expires_at,
    )


def build_unsubscribe_url(user_id: str, email_address: str) -> str:
    token = generate_unsubscribe_token(user_id, email_address)
    return f"{get_settings().app_url}/unsubscribe/{token}"
