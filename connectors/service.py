"""
IntegrationService — the single facade the host application talks to.

Owns the connection lifecycle for one user's integrations:

  connect (OAuth redirect or raw credentials) → persist → build client on
  demand → sync → disconnect

Provider specifics stay in the connector classes; this module only deals
with ``BaseConnector`` / ``OAuthConnector`` and the credential union.

``IntegrationHub`` keeps one service per host user and shares a single
``OAuthStateManager`` between them, so an OAuth callback can be routed to
whichever user started the flow.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union

import httpx

from connectors.base import BaseConnector, CredentialForm, OAuthConnector
from connectors.oauth_state import OAuthStateManager
from connectors.registry import ConnectorRegistry
from connectors.store import IntegrationStore
from utils.schemas import (
    CloudCredential,
    ConnectionResult,
    ConnectionStatus,
    CredentialMismatchError,
    IntegrationConfig,
    OAuthApp,
    OAuthCredential,
    OAuthState,
    Provider,
    SyncResult,
    config_id,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseConnector)

INVALID_STATE = "Invalid or expired OAuth state"
NOT_CONNECTED = "Integration not connected"


@dataclass
class _Attempt:
    """Transient connect attempt; never persisted."""

    status: ConnectionStatus
    error: Optional[str] = None


class IntegrationService:
    def __init__(
        self,
        store: IntegrationStore,
        oauth_apps: Optional[Mapping[Provider, OAuthApp]] = None,
        state_manager: Optional[OAuthStateManager] = None,
        connector_classes: Optional[Mapping[Provider, Type[BaseConnector]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Parameters
        ----------
        store             : persistence port scoped to one user.
        oauth_apps        : provider → OAuthApp; providers missing here cannot
                            start an OAuth flow or link a token page.
        state_manager     : shared state manager; a private one is created
                            when omitted.
        connector_classes : override of the provider → connector table.
        transport         : httpx transport handed to every connector
                            (tests use ``httpx.MockTransport``).
        """
        self._store = store
        self._oauth_apps: Dict[Provider, OAuthApp] = dict(oauth_apps or {})
        # An idle manager has len() == 0, so test against None
        if state_manager is None:
            state_manager = OAuthStateManager(secrets.token_urlsafe(32))
        self._states = state_manager
        self._transport = transport
        self._configs: Dict[Provider, IntegrationConfig] = {}
        self._attempts: Dict[Provider, _Attempt] = {}
        self._registry = ConnectorRegistry(self._configs.get, connector_classes, transport)

    @property
    def registry(self) -> ConnectorRegistry:
        return self._registry

    @property
    def state_manager(self) -> OAuthStateManager:
        return self._states

    async def load(self) -> None:
        """Mirror persisted configs into memory."""
        configs = await self._store.load()
        self._configs.clear()
        self._configs.update({c.provider: c for c in configs})
        self._registry.clear()
        logger.info("Loaded %d integration config(s)", len(configs))

    # ── Attempt bookkeeping ─────────────────────────────────────────────

    def _set_attempt(self, provider: Provider, status: ConnectionStatus, error: Optional[str] = None) -> None:
        self._attempts[provider] = _Attempt(status, error)

    def _fail(self, provider: Provider, error: str) -> ConnectionResult:
        self._set_attempt(provider, ConnectionStatus.ERROR, error)
        logger.warning("Connect %s failed: %s", provider.value, error)
        return ConnectionResult(success=False, provider=provider, error=error)

    async def _commit(self, config: IntegrationConfig) -> ConnectionResult:
        """Persist first; the mirror and cache only change after a good write."""
        try:
            await self._store.save(config)
        except Exception as exc:
            return self._fail(config.provider, f"Failed to save integration: {exc}")
        self._configs[config.provider] = config
        self._registry.evict(config.provider)
        self._attempts.pop(config.provider, None)
        logger.info(
            "Integration connected: provider=%s user=%s account=%s",
            config.provider.value,
            config.user_id,
            config.metadata.account_name or config.metadata.workspace_name or "-",
        )
        return ConnectionResult(success=True, provider=config.provider, config=config)

    # ── OAuth ───────────────────────────────────────────────────────────

    def _oauth_class(self, provider: Provider) -> Optional[Type[OAuthConnector]]:
        cls = self._registry.connector_class(provider)
        if isinstance(cls, type) and issubclass(cls, OAuthConnector):
            return cls
        return None

    def get_authorization_url(self, provider: Provider, user_id: str, redirect_url: str = "") -> Optional[str]:
        """
        Start an OAuth flow.

        Key-and-token providers with an app registration get their
        token-request page instead; no state is issued for those.  Returns
        None when neither applies.
        """
        cls = self._oauth_class(provider)
        app = self._oauth_apps.get(provider)
        if cls is None and app is not None:
            page = self._registry.connector_class(provider).token_page_url(app, redirect_url)
            if page:
                return page
        if cls is None or app is None:
            logger.warning("OAuth not available for %s", provider.value)
            return None

        state = self._states.issue(provider, user_id, redirect_url)
        self._set_attempt(provider, ConnectionStatus.PENDING)
        return cls.get_auth_url(app, state)

    async def handle_oauth_callback(self, provider: Provider, code: str, state: str) -> ConnectionResult:
        oauth_state = self._states.consume(state)
        if oauth_state is None or oauth_state.provider != provider:
            return self._fail(provider, INVALID_STATE)
        return await self.complete_authorization(provider, code, oauth_state)

    async def complete_authorization(self, provider: Provider, code: str, oauth_state: OAuthState) -> ConnectionResult:
        """Exchange ``code``, look up the account and persist the connection."""
        if oauth_state.user_id != self._store.user_id:
            logger.warning(
                "OAuth state for user %s presented to the service of user %s",
                oauth_state.user_id,
                self._store.user_id,
            )
            return self._fail(provider, INVALID_STATE)

        cls = self._oauth_class(provider)
        app = self._oauth_apps.get(provider)
        if cls is None or app is None:
            return self._fail(provider, f"OAuth is not configured for {provider.value}")

        self._set_attempt(provider, ConnectionStatus.PENDING)
        try:
            grant = await cls.exchange_code(app, code, transport=self._transport)
            connector = cls.from_credential(grant.credential, grant.settings, transport=self._transport)
            identity = await connector.identity()
        except Exception as exc:
            return self._fail(provider, f"{cls.display_name} authorization failed: {exc}")

        config = IntegrationConfig(
            id=config_id(provider, oauth_state.user_id),
            provider=provider,
            status=ConnectionStatus.CONNECTED,
            credential=grant.credential,
            settings=grant.settings,
            connected_at=utcnow(),
            user_id=oauth_state.user_id,
            metadata=grant.metadata.merged(identity),
        )
        return await self._commit(config)

    # ── Credential-based connect ────────────────────────────────────────

    def _parse_fields(
        self, provider: Provider, raw_fields: Mapping[str, Any]
    ) -> Tuple[Optional[Any], Dict[str, Any], Optional[str]]:
        cls = self._registry.connector_class(provider)
        form = cls.credential_form
        if form is None:
            return None, {}, f"{cls.display_name} does not support credential authentication"
        missing = form.missing(raw_fields)
        if missing:
            return None, {}, f"Missing required fields: {', '.join(missing)}"
        try:
            credential, settings = cls.credentials_from_fields(form.normalize(raw_fields))
        except ValueError as exc:
            return None, {}, f"Invalid credentials: {exc}"
        return credential, settings, None

    async def connect_with_credentials(
        self, provider: Provider, raw_fields: Mapping[str, Any], user_id: str
    ) -> ConnectionResult:
        """
        Validate raw form fields, probe the provider, and persist on success.

        A failed probe leaves any previous config for ``provider`` untouched.
        """
        if provider == Provider.CLOUD:
            return await self.connect_cloud_credentials(raw_fields, user_id)

        cls = self._registry.connector_class(provider)
        if cls.credential_form is None:
            error = f"{cls.display_name} does not support credential authentication"
            return ConnectionResult(success=False, provider=provider, error=error)

        self._set_attempt(provider, ConnectionStatus.PENDING)
        credential, settings, error = self._parse_fields(provider, raw_fields)
        if error:
            return self._fail(provider, error)
        return await self._probe_and_commit(provider, credential, settings, user_id)

    async def connect_cloud_credentials(
        self, credential_or_fields: Union[CloudCredential, Mapping[str, Any]], user_id: str
    ) -> ConnectionResult:
        """Connect ``cloud`` from a ``CloudCredential`` or raw form fields."""
        provider = Provider.CLOUD
        self._set_attempt(provider, ConnectionStatus.PENDING)
        if isinstance(credential_or_fields, CloudCredential):
            credential = credential_or_fields
            settings: Dict[str, Any] = {"region": credential.region}
        else:
            credential, settings, error = self._parse_fields(provider, credential_or_fields)
            if error:
                return self._fail(provider, error)
        return await self._probe_and_commit(provider, credential, settings, user_id)

    async def _probe_and_commit(
        self, provider: Provider, credential: Any, settings: Dict[str, Any], user_id: str
    ) -> ConnectionResult:
        config = IntegrationConfig(
            id=config_id(provider, user_id),
            provider=provider,
            status=ConnectionStatus.CONNECTED,
            credential=credential,
            settings=settings,
            connected_at=utcnow(),
            user_id=user_id,
        )
        display_name = self._registry.connector_class(provider).display_name
        try:
            connector = self._registry.build(config)
            metadata = await connector.identity()
        except CredentialMismatchError:
            raise
        except Exception as exc:
            return self._fail(provider, f"{display_name} rejected the credentials: {exc}")

        return await self._commit(config.model_copy(update={"metadata": metadata}))

    # ── Disconnect / settings ───────────────────────────────────────────

    def _store_failure(self, provider: Provider, error: str) -> ConnectionResult:
        """A write that failed on an existing config; the mirror is left as it was."""
        self._set_attempt(provider, ConnectionStatus.ERROR, error)
        logger.error("%s: %s", provider.value, error)
        return ConnectionResult(success=False, provider=provider, config=self._configs.get(provider), error=error)

    async def disconnect(self, provider: Provider) -> ConnectionResult:
        """
        Forget the integration.  Safe to call when nothing is connected.

        Tokens are not revoked at the provider.  If the store cannot delete
        the record the integration stays connected and the result says why.
        """
        self._registry.evict(provider)
        try:
            await self._store.delete(provider)
        except Exception as exc:
            return self._store_failure(provider, f"Failed to remove integration: {exc}")
        self._configs.pop(provider, None)
        self._attempts.pop(provider, None)
        logger.info("Integration disconnected: %s", provider.value)
        return ConnectionResult(success=True, provider=provider)

    async def update_settings(self, provider: Provider, settings: Mapping[str, Any]) -> ConnectionResult:
        """Merge ``settings`` into the stored config."""
        config = self._configs.get(provider)
        if config is None:
            return ConnectionResult(success=False, provider=provider, error=NOT_CONNECTED)
        updated = config.model_copy(update={"settings": {**config.settings, **settings}})
        try:
            await self._store.save(updated)
        except Exception as exc:
            return self._store_failure(provider, f"Failed to save settings: {exc}")
        self._configs[provider] = updated
        self._registry.evict(provider)
        self._attempts.pop(provider, None)
        return ConnectionResult(success=True, provider=provider, config=updated)

    # ── Sync ────────────────────────────────────────────────────────────

    async def _ensure_fresh(self, config: IntegrationConfig) -> Optional[IntegrationConfig]:
        """
        Refresh an expired OAuth credential where the provider allows it.

        Returns None when the config was disconnected or replaced while the
        refresh was in flight; the refreshed credential is then dropped.
        """
        credential = config.credential
        if not isinstance(credential, OAuthCredential) or not credential.is_expired:
            return config
        cls = self._oauth_class(config.provider)
        app = self._oauth_apps.get(config.provider)
        if cls is None or not cls.supports_refresh or app is None or not credential.refresh_token:
            return config

        refreshed = await cls.refresh_credential(app, credential.refresh_token, transport=self._transport)
        if self._configs.get(config.provider) is not config:
            logger.info("Dropping refreshed %s token: config changed during refresh", config.provider.value)
            return None
        updated = config.model_copy(update={"credential": refreshed})
        await self._store.save(updated)
        if self._configs.get(config.provider) is not config:
            return None
        self._configs[config.provider] = updated
        self._registry.evict(config.provider)
        logger.info("Refreshed %s token for user %s", config.provider.value, config.user_id)
        return updated

    async def sync(self, provider: Provider) -> SyncResult:
        """
        Pull items for one provider.  Never raises.

        Per-item problems are reported in ``errors`` with ``success=True``;
        anything that stops the connector as a whole is a failed result.
        """
        config = self._configs.get(provider)
        if config is None or config.status != ConnectionStatus.CONNECTED or config.credential is None:
            return SyncResult.failed(provider, NOT_CONNECTED)

        try:
            config = await self._ensure_fresh(config)
            connector = self._registry.get(provider) if config is not None else None
            if connector is None:
                return SyncResult.failed(provider, NOT_CONNECTED)
            outcome = await connector.sync_items(config.settings)
        except Exception as exc:
            logger.warning("Sync %s failed: %s", provider.value, exc)
            return SyncResult.failed(provider, str(exc))

        errors = list(outcome.errors)
        synced_at = utcnow()
        current = self._configs.get(provider)
        if current is not None:
            updated = current.model_copy(update={"last_sync_at": synced_at})
            try:
                await self._store.save(updated)
            except Exception as exc:
                errors.append(f"Failed to record sync time: {exc}")
            else:
                self._configs[provider] = updated

        logger.info(
            "Sync %s: %d item(s), %d error(s)",
            provider.value,
            outcome.items_synced,
            len(errors),
        )
        return SyncResult(
            success=True,
            provider=provider,
            items_synced=outcome.items_synced,
            errors=errors or None,
            timestamp=synced_at,
        )

    async def sync_all(self) -> List[SyncResult]:
        """Sync every connected provider concurrently; one result each."""
        providers = [p for p, c in self._configs.items() if c.status == ConnectionStatus.CONNECTED]
        results = await asyncio.gather(*(self.sync(p) for p in providers), return_exceptions=True)
        out: List[SyncResult] = []
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.error("Sync %s raised: %s", provider.value, result)
                result = SyncResult.failed(provider, str(result))
            out.append(result)
        return out

    # ── Read accessors ──────────────────────────────────────────────────

    def get_config(self, provider: Provider) -> Optional[IntegrationConfig]:
        return self._configs.get(provider)

    def get_all_configs(self) -> List[IntegrationConfig]:
        return list(self._configs.values())

    def is_connected(self, provider: Provider) -> bool:
        config = self._configs.get(provider)
        return config is not None and config.status == ConnectionStatus.CONNECTED

    def get_status(self, provider: Provider) -> ConnectionStatus:
        config = self._configs.get(provider)
        if config is not None:
            return config.status
        attempt = self._attempts.get(provider)
        if attempt is not None:
            return attempt.status
        return ConnectionStatus.DISCONNECTED

    def get_last_error(self, provider: Provider) -> Optional[str]:
        attempt = self._attempts.get(provider)
        return attempt.error if attempt else None

    def get_connector(self, provider: Provider) -> Optional[BaseConnector]:
        return self._registry.get(provider)

    def get_connector_as(self, provider: Provider, cls: Type[T]) -> Optional[T]:
        return self._registry.get_as(provider, cls)

    def get_credential_form(self, provider: Provider) -> Optional[CredentialForm]:
        return self._registry.connector_class(provider).credential_form

    def list_providers(self) -> List[Dict[str, Any]]:
        """Provider catalogue with this user's status, for the host UI."""
        out: List[Dict[str, Any]] = []
        for provider in self._registry.providers():
            cls = self._registry.connector_class(provider)
            is_oauth = self._oauth_class(provider) is not None
            form = cls.credential_form.to_dict() if cls.credential_form else None
            app = self._oauth_apps.get(provider)
            if form is not None and app is not None:
                form["help_url"] = cls.token_page_url(app) or form["help_url"]
            out.append(
                {
                    "provider": provider.value,
                    "display_name": cls.display_name,
                    "icon": cls.icon,
                    "auth": "oauth" if is_oauth else "credentials",
                    "configured": provider in self._oauth_apps if is_oauth else True,
                    "status": self.get_status(provider).value,
                    "credential_form": form,
                }
            )
        return out


StoreFactory = Callable[[str], IntegrationStore]


class IntegrationHub:
    """One ``IntegrationService`` per host user, created lazily."""

    def __init__(
        self,
        store_factory: StoreFactory,
        oauth_apps: Optional[Mapping[Provider, OAuthApp]],
        state_manager: OAuthStateManager,
        connector_classes: Optional[Mapping[Provider, Type[BaseConnector]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._store_factory = store_factory
        self._oauth_apps = dict(oauth_apps or {})
        self._states = state_manager
        self._connector_classes = connector_classes
        self._transport = transport
        self._services: Dict[str, IntegrationService] = {}
        self._lock = asyncio.Lock()

    @property
    def state_manager(self) -> OAuthStateManager:
        return self._states

    async def for_user(self, user_id: str) -> IntegrationService:
        async with self._lock:
            service = self._services.get(user_id)
            if service is None:
                service = IntegrationService(
                    self._store_factory(user_id),
                    oauth_apps=self._oauth_apps,
                    state_manager=self._states,
                    connector_classes=self._connector_classes,
                    transport=self._transport,
                )
                await service.load()
                self._services[user_id] = service
            return service

    async def handle_oauth_callback(self, provider: Provider, code: str, state: str) -> ConnectionResult:
        """Route a callback to the user who started the flow."""
        oauth_state = self._states.consume(state)
        if oauth_state is None or oauth_state.provider != provider:
            return ConnectionResult(success=False, provider=provider, error=INVALID_STATE)
        service = await self.for_user(oauth_state.user_id)
        return await service.complete_authorization(provider, code, oauth_state)
