"""
ConnectorRegistry — builds and caches provider clients.

A registry belongs to exactly one ``IntegrationService``.  It never reads
storage itself: on a cache miss it asks the service's in-memory mirror for
the config, so what it builds always matches what was last persisted.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Type, TypeVar

import httpx

from connectors.aws import AWSConnector
from connectors.base import BaseConnector
from connectors.figma import FigmaConnector
from connectors.github import GitHubConnector
from connectors.gmail import GmailConnector
from connectors.slack import SlackConnector
from connectors.supabase import SupabaseConnector
from connectors.trello import TrelloConnector
from connectors.vercel import VercelConnector
from utils.schemas import ConnectionStatus, IntegrationConfig, Provider, check_credential

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseConnector)

# ── All known connectors — add new ones here ─────────────────────────────

CONNECTOR_CLASSES: Dict[Provider, Type[BaseConnector]] = {
    Provider.SOURCE_HOST: GitHubConnector,
    Provider.CHAT: SlackConnector,
    Provider.DESIGN_TOOL: FigmaConnector,
    Provider.MAILBOX: GmailConnector,
    Provider.CARD_BOARD: TrelloConnector,
    Provider.DEPLOY_PLATFORM: VercelConnector,
    Provider.BAAS: SupabaseConnector,
    Provider.CLOUD: AWSConnector,
}

ConfigLookup = Callable[[Provider], Optional[IntegrationConfig]]


class ConnectorRegistry:
    """Lazily-built, per-orchestrator cache of connector clients."""

    def __init__(
        self,
        config_lookup: ConfigLookup,
        connector_classes: Optional[Mapping[Provider, Type[BaseConnector]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._lookup = config_lookup
        if connector_classes is None:
            connector_classes = CONNECTOR_CLASSES
        self._classes: Dict[Provider, Type[BaseConnector]] = dict(connector_classes)
        self._transport = transport
        self._cache: Dict[Provider, BaseConnector] = {}

    def connector_class(self, provider: Provider) -> Type[BaseConnector]:
        return self._classes[provider]

    def providers(self) -> List[Provider]:
        return list(self._classes)

    def build(self, config: IntegrationConfig) -> BaseConnector:
        """
        Construct a client for ``config`` without caching it.

        Raises ``CredentialMismatchError`` if the stored credential is the
        wrong variant for the provider.
        """
        check_credential(config.provider, config.credential)
        cls = self._classes[config.provider]
        return cls.from_credential(config.credential, config.settings, transport=self._transport)

    def get(self, provider: Provider) -> Optional[BaseConnector]:
        """Cached client for ``provider``, or None if it is not connected."""
        cached = self._cache.get(provider)
        if cached is not None:
            return cached

        config = self._lookup(provider)
        if config is None or config.status != ConnectionStatus.CONNECTED or config.credential is None:
            return None

        connector = self.build(config)
        self._cache[provider] = connector
        logger.info("Connector built: %s for user %s", provider.value, config.user_id)
        return connector

    def get_as(self, provider: Provider, cls: Type[T]) -> Optional[T]:
        connector = self.get(provider)
        if isinstance(connector, cls):
            return connector
        return None

    def evict(self, provider: Provider) -> None:
        if self._cache.pop(provider, None) is not None:
            logger.info("Connector evicted: %s", provider.value)

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, provider: Provider) -> bool:
        return provider in self._cache
