"""
SqlIntegrationStore — ``IntegrationStore`` backed by SQLAlchemy async.
"""

from __future__ import annotations

import logging
from datetime import timezone
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from connectors.store import IntegrationStore, StoreError
from database.models import IntegrationRecord
from utils.schemas import (
    ConnectionStatus,
    IntegrationConfig,
    IntegrationMetadata,
    Provider,
)

logger = logging.getLogger(__name__)


def _aware(value):
    # SQLite drops tzinfo on DateTime(timezone=True)
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlIntegrationStore(IntegrationStore):
    """One ``integration_configs`` row per (user, provider)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_id: str,
        cipher: Optional[TokenCipher] = None,
    ):
        self._session_factory = session_factory
        self._user_id = user_id
        self._cipher = cipher or TokenCipher(None)

    @property
    def user_id(self) -> str:
        return self._user_id

    def _to_config(self, row: IntegrationRecord) -> IntegrationConfig:
        return IntegrationConfig(
            id=row.config_id,
            provider=Provider(row.provider),
            status=ConnectionStatus(row.status),
            credential=self._cipher.open_credential(row.credential),
            settings=row.settings or {},
            connected_at=_aware(row.connected_at),
            last_sync_at=_aware(row.last_sync_at),
            user_id=row.user_id,
            metadata=IntegrationMetadata.model_validate(row.provider_meta or {}),
        )

    async def load(self) -> List[IntegrationConfig]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(IntegrationRecord).where(IntegrationRecord.user_id == self._user_id)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load integrations for user {self._user_id}: {exc}") from exc

        configs: List[IntegrationConfig] = []
        for row in rows:
            try:
                configs.append(self._to_config(row))
            except (ValidationError, ValueError) as exc:
                logger.warning("Skipping unreadable %s config for user %s: %s", row.provider, self._user_id, exc)
        return configs

    async def save(self, config: IntegrationConfig) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(IntegrationRecord).where(
                            IntegrationRecord.user_id == self._user_id,
                            IntegrationRecord.provider == config.provider.value,
                        )
                    )
                    row = result.scalar_one_or_none()
                    if row is None:
                        row = IntegrationRecord(user_id=self._user_id, provider=config.provider.value)
                        session.add(row)
                    row.config_id = config.id
                    row.status = config.status.value
                    row.credential = self._cipher.seal_credential(config.credential)
                    row.settings = dict(config.settings)
                    row.provider_meta = config.metadata.model_dump(mode="json", by_alias=True)
                    row.connected_at = config.connected_at
                    row.last_sync_at = config.last_sync_at
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save {config.provider.value} for user {self._user_id}: {exc}") from exc

    async def delete(self, provider: Provider) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(IntegrationRecord).where(
                            IntegrationRecord.user_id == self._user_id,
                            IntegrationRecord.provider == provider.value,
                        )
                    )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to delete {provider.value} for user {self._user_id}: {exc}") from exc
