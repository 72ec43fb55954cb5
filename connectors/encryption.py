"""
Credential encryption — encrypt / decrypt credentials at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key comes from ``config.token_encryption_key`` (env var:
``TOKEN_ENCRYPTION_KEY``) and is handed to the stores explicitly.

If no key is configured, encryption is **disabled** and credentials are
stored as plaintext JSON (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from utils.schemas import credential_adapter

logger = logging.getLogger(__name__)


class TokenCipher:
    """Fernet wrapper that degrades to plaintext when no key is set."""

    def __init__(self, key: Optional[str] = None):
        self._fernet: Optional[Fernet] = None
        if not key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — credentials will be stored as plaintext. "
                "Generate a key: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
            return
        # Invalid keys fail loudly at startup rather than on first write
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        logger.info("Credential encryption enabled (Fernet/AES-128-CBC)")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage.

        Returns the Fernet ciphertext (URL-safe base64), or the plaintext
        unchanged when encryption is disabled.
        """
        if self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a string read from storage.

        Values written before encryption was enabled are not valid Fernet
        tokens and are returned as-is.
        """
        if self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext

    # ── Credential helpers ──────────────────────────────────────────────

    def seal_credential(self, credential: Any) -> Optional[str]:
        """Serialise a credential variant and encrypt it."""
        if credential is None:
            return None
        payload = credential_adapter.dump_python(credential, mode="json", by_alias=True)
        return self.encrypt(json.dumps(payload))

    def open_credential(self, sealed: Optional[str]) -> Any:
        """Inverse of ``seal_credential``; returns the typed variant."""
        if not sealed:
            return None
        return credential_adapter.validate_python(json.loads(self.decrypt(sealed)))
