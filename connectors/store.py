"""
Integration stores — where ``IntegrationConfig`` records live.

``IntegrationStore`` is the port the orchestrator talks to.  This module
holds the key-value implementation: every config of one user is kept as a
single JSON document under ``integrations:<userId>`` in a pluggable
backend (in-memory, or a JSON file for single-node deployments).  The SQL
implementation lives in ``database.store``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from connectors.encryption import TokenCipher
from utils.schemas import IntegrationConfig, Provider

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Storage could not be read or written."""


class IntegrationStore(ABC):
    """Async persistence port for one user's integration configs."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        """The host user whose configs this store holds."""
        ...

    @abstractmethod
    async def load(self) -> List[IntegrationConfig]:
        ...

    @abstractmethod
    async def save(self, config: IntegrationConfig) -> None:
        """Insert or overwrite the config for ``config.provider``."""
        ...

    @abstractmethod
    async def delete(self, provider: Provider) -> None:
        """Remove the config for ``provider``; no-op if absent."""
        ...


# ── Key-value backends ─────────────────────────────────────────────────


class KeyValueBackend(ABC):
    """Minimal async string store the host application provides."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...


class InMemoryBackend(KeyValueBackend):
    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileBackend(KeyValueBackend):
    """All keys in one JSON file; writes go through a temp file + rename."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"Cannot read {self._path}: {exc}") from exc

    def _write(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(self._path)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[key] = value
            try:
                await asyncio.to_thread(self._write, data)
            except OSError as exc:
                raise StoreError(f"Cannot write {self._path}: {exc}") from exc


# ── Key-value store ────────────────────────────────────────────────────


def storage_key(user_id: str) -> str:
    return f"integrations:{user_id}"


class KeyValueIntegrationStore(IntegrationStore):
    """
    One JSON document per user::

        {"source_host": {...config, "credential": "<sealed>"}, ...}
    """

    def __init__(self, backend: KeyValueBackend, user_id: str, cipher: Optional[TokenCipher] = None):
        self._backend = backend
        self._user_id = user_id
        self._cipher = cipher or TokenCipher(None)
        self._lock = asyncio.Lock()

    @property
    def user_id(self) -> str:
        return self._user_id

    async def _read_document(self) -> Dict[str, Any]:
        raw = await self._backend.get(storage_key(self._user_id))
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise StoreError(f"Corrupt integrations document for user {self._user_id}") from exc

    async def _write_document(self, document: Dict[str, Any]) -> None:
        await self._backend.set(storage_key(self._user_id), json.dumps(document))

    def _encode(self, config: IntegrationConfig) -> Dict[str, Any]:
        data = config.public_view()
        data["credential"] = self._cipher.seal_credential(config.credential)
        return data

    def _decode(self, data: Dict[str, Any]) -> IntegrationConfig:
        data = dict(data)
        data["credential"] = self._cipher.open_credential(data.get("credential"))
        return IntegrationConfig.model_validate(data)

    async def load(self) -> List[IntegrationConfig]:
        document = await self._read_document()
        configs: List[IntegrationConfig] = []
        for provider, data in document.items():
            try:
                configs.append(self._decode(data))
            except (ValidationError, ValueError) as exc:
                logger.warning("Skipping unreadable %s config for user %s: %s", provider, self._user_id, exc)
        return configs

    async def save(self, config: IntegrationConfig) -> None:
        async with self._lock:
            document = await self._read_document()
            document[config.provider.value] = self._encode(config)
            await self._write_document(document)

    async def delete(self, provider: Provider) -> None:
        async with self._lock:
            document = await self._read_document()
            if document.pop(provider.value, None) is not None:
                await self._write_document(document)
