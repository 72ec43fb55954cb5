"""
Host-issued bearer tokens.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256 using
``config.auth_token_secret`` (env var: ``AUTH_TOKEN_SECRET``).  The host
application mints them; this service only verifies.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode
from typing import Optional

from fastapi import HTTPException, status

DEFAULT_TOKEN_EXPIRY_SECONDS = 24 * 3600


def create_token(user_id: str, secret: str, expiry_seconds: int = DEFAULT_TOKEN_EXPIRY_SECONDS) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return b64encode(raw).decode() + "." + sig


def verify_token(token: str, secret: str, now: Optional[float] = None) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        expected_sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(parts[1], expected_sig):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < (time.time() if now is None else now):
            raise ValueError("token expired")
        return payload["user_id"]
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
