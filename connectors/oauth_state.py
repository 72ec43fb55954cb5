"""
OAuth state manager — CSRF protection for the authorization-code flow.

A state token is ``base64url(json payload) + "." + hex hmac``.  Besides the
signature, every issued token is remembered in-process, so a token is only
accepted once and only by the process that issued it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from utils.schemas import OAuthState, Provider

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL = 600  # seconds


def _fingerprint(token: str) -> str:
    """Short hash of a token, safe to log."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


class OAuthStateManager:
    """Issues and consumes signed, single-use OAuth state tokens."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = DEFAULT_STATE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("OAuth state secret must not be empty")
        self._secret = secret.encode()
        self._ttl = ttl_seconds
        self._clock = clock
        self._pending: Dict[str, OAuthState] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _sign(self, raw: bytes) -> str:
        return hmac.new(self._secret, raw, hashlib.sha256).hexdigest()

    def _expired(self, state: OAuthState, now: float) -> bool:
        return now - state.timestamp > self._ttl

    def issue(self, provider: Provider, user_id: str, redirect_url: str = "") -> str:
        """Create a state token for ``user_id`` connecting ``provider``."""
        state = OAuthState(
            provider=provider,
            user_id=user_id,
            redirect_url=redirect_url,
            timestamp=self._clock(),
            nonce=secrets.token_urlsafe(16),
        )
        raw = json.dumps(state.model_dump(mode="json", by_alias=True), sort_keys=True).encode()
        token = urlsafe_b64encode(raw).decode().rstrip("=") + "." + self._sign(raw)

        with self._lock:
            self._sweep_locked(state.timestamp)
            self._pending[token] = state

        logger.info("OAuth state issued: provider=%s user=%s state=%s", provider.value, user_id, _fingerprint(token))
        return token

    def consume(self, token: str) -> Optional[OAuthState]:
        """
        Return the state for ``token`` and forget it.

        Returns None for unknown, tampered, already-used or expired tokens.
        """
        with self._lock:
            state = self._pending.pop(token, None)

        if state is None:
            logger.warning("OAuth state rejected (unknown or reused): %s", _fingerprint(token))
            return None

        decoded = self._verify(token)
        if decoded is None or decoded != state:
            logger.warning("OAuth state rejected (bad signature): %s", _fingerprint(token))
            return None

        if self._expired(state, self._clock()):
            logger.warning("OAuth state rejected (expired): %s", _fingerprint(token))
            return None

        return state

    def _verify(self, token: str) -> Optional[OAuthState]:
        encoded, sep, sig = token.partition(".")
        if not sep:
            return None
        try:
            raw = urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        except ValueError:
            return None
        if not hmac.compare_digest(sig, self._sign(raw)):
            return None
        try:
            return OAuthState.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            return None

    def sweep(self) -> int:
        """Drop expired entries; return how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        stale = [t for t, s in self._pending.items() if self._expired(s, now)]
        for token in stale:
            del self._pending[token]
        if stale:
            logger.debug("Swept %d expired OAuth states", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._pending)
