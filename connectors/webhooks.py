"""
Inbound webhook signature checks.

Only GitHub (``source_host``) and Slack (``chat``) sign their webhooks in a
way we verify; everything else is rejected.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Optional, Union

from utils.schemas import Provider

logger = logging.getLogger(__name__)

SLACK_TIMESTAMP_TOLERANCE = 300  # seconds

Body = Union[bytes, str]


def _as_bytes(body: Body) -> bytes:
    return body.encode() if isinstance(body, str) else body


def verify_source_host_signature(body: Body, signature: Optional[str], secret: str) -> bool:
    """Check GitHub's ``X-Hub-Signature-256: sha256=<hex>`` header."""
    if not signature or not secret:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), _as_bytes(body), hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def verify_chat_signature(
    secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    body: Body,
    now: Optional[float] = None,
    tolerance: int = SLACK_TIMESTAMP_TOLERANCE,
) -> bool:
    """
    Check Slack's ``X-Slack-Signature: v0=<hex>`` over ``v0:<ts>:<body>``.

    Requests whose ``X-Slack-Request-Timestamp`` is outside ``tolerance``
    are rejected to stop replays.
    """
    if not signature or not timestamp or not secret:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        logger.warning("Slack webhook timestamp outside tolerance: %s", timestamp)
        return False
    base = f"v0:{timestamp}:".encode() + _as_bytes(body)
    expected = "v0=" + hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def verify_webhook(provider: Provider, secret: Optional[str], headers, body: Body) -> bool:
    """Dispatch on provider using the raw request headers."""
    if not secret:
        return False
    if provider == Provider.SOURCE_HOST:
        return verify_source_host_signature(body, headers.get("x-hub-signature-256"), secret)
    if provider == Provider.CHAT:
        return verify_chat_signature(
            secret,
            headers.get("x-slack-signature"),
            headers.get("x-slack-request-timestamp"),
            body,
        )
    return False
