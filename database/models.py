"""
SQLAlchemy ORM models for integration storage.

Generic column types only, so the same schema runs on PostgreSQL and on
SQLite (tests, single-node installs).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class IntegrationRecord(Base):
    __tablename__ = "integration_configs"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),)

    record_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    config_id = Column(String(160), nullable=False)
    user_id = Column(String(128), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    credential = Column(Text)  # Fernet-sealed JSON of the credential variant
    settings = Column(JSON, nullable=False, default=dict)
    provider_meta = Column(JSON, nullable=False, default=dict)
    connected_at = Column(DateTime(timezone=True))
    last_sync_at = Column(DateTime(timezone=True))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
