"""
BaseConnector — abstract interface for all provider connectors.

Every provider (GitHub, Slack, Trello, AWS, …) subclasses this and
implements three things:

  • ``from_credential`` — build the client from exactly the fields its
    credential variant carries
  • ``identity``        — cheap identity / health probe used when connecting
  • ``sync_items``      — bulk accessor driven by the orchestrator's sync

OAuth providers subclass ``OAuthConnector`` which adds the redirect flow.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from utils.schemas import (
    IntegrationMetadata,
    OAuthApp,
    OAuthCredential,
    Provider,
    check_credential,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


class ConnectorError(Exception):
    """A provider API rejected a call or returned an error payload."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        self.message = message
        prefix = f"{provider} API error"
        if status_code is not None:
            prefix += f": {status_code}"
        super().__init__(f"{prefix} - {message}")


@dataclass
class ItemSync:
    """Outcome of a connector's bulk sync hook."""

    items_synced: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class OAuthGrant:
    """What a successful code exchange yields."""

    credential: OAuthCredential
    metadata: IntegrationMetadata = field(default_factory=IntegrationMetadata)
    settings: Dict[str, Any] = field(default_factory=dict)


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


@dataclass(frozen=True)
class CredentialForm:
    """Raw field set a credential-based provider needs from the user."""

    required: Tuple[str, ...]
    optional: Tuple[str, ...] = ()
    help_url: Optional[str] = None

    @staticmethod
    def normalize(raw: Mapping[str, Any]) -> Dict[str, str]:
        """Accept camelCase or snake_case keys; drop empty values."""
        fields: Dict[str, str] = {}
        for key, value in raw.items():
            if value is None:
                continue
            value = str(value).strip()
            if value:
                fields[_snake(key)] = value
        return fields

    def missing(self, raw: Mapping[str, Any]) -> List[str]:
        fields = self.normalize(raw)
        return [name for name in self.required if name not in fields]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required": list(self.required),
            "optional": list(self.optional),
            "help_url": self.help_url,
        }


class BaseConnector(ABC):
    """Abstract base for all provider connectors."""

    provider: ClassVar[Provider]
    display_name: ClassVar[str]
    credential_form: ClassVar[Optional[CredentialForm]] = None
    icon: ClassVar[str] = "🔗"

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    # ── Construction ────────────────────────────────────────────────────

    @classmethod
    @abstractmethod
    def from_credential(
        cls,
        credential: Any,
        settings: Mapping[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "BaseConnector":
        """Build the client from the variant this provider accepts."""
        ...

    @classmethod
    def credentials_from_fields(cls, fields: Mapping[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        """
        Turn submitted form fields into ``(credential, settings)``.

        Only credential-based providers implement this.
        """
        raise NotImplementedError(f"{cls.display_name} does not accept raw credentials")

    @classmethod
    def token_page_url(cls, app: OAuthApp, return_url: str = "") -> Optional[str]:
        """Page where a user can mint the token the credential form asks for."""
        return None

    @classmethod
    def _check(cls, credential: Any) -> None:
        check_credential(cls.provider, credential)

    # ── Provider calls ──────────────────────────────────────────────────

    @abstractmethod
    async def identity(self) -> IntegrationMetadata:
        """Cheap authenticated call proving the credential works."""
        ...

    @abstractmethod
    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """
        Pull the provider's items.

        Raise when the provider cannot be reached at all; collect per-item
        failures in ``ItemSync.errors`` otherwise.
        """
        ...

    # ── HTTP helpers ────────────────────────────────────────────────────

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
        return httpx.AsyncClient(transport=self._transport, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        async with self._client() as client:
            resp = await client.request(method, url, headers=headers, **kwargs)
        if resp.status_code >= 400:
            raise ConnectorError(self.display_name, _error_detail(resp), resp.status_code)
        if not resp.content:
            return None
        return resp.json()


class OAuthConnector(BaseConnector):
    """Connector whose credential comes from an authorization-code flow."""

    authorize_url: ClassVar[str]
    token_url: ClassVar[str]
    default_scopes: ClassVar[List[str]] = []
    scope_separator: ClassVar[str] = " "
    extra_auth_params: ClassVar[Dict[str, str]] = {}
    supports_refresh: ClassVar[bool] = False
    refresh_url: ClassVar[Optional[str]] = None   # defaults to token_url

    def __init__(self, access_token: str, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(transport=transport)
        self._access_token = access_token

    @classmethod
    def from_credential(cls, credential, settings, *, transport=None):
        cls._check(credential)
        return cls(credential.access_token, transport=transport)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    # ── OAuth flow ──────────────────────────────────────────────────────

    @classmethod
    def get_auth_url(cls, app: OAuthApp, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        app : OAuthApp
            Client registration for this deployment.
        state : str
            Opaque token from the state manager, returned verbatim on callback.
        """
        scopes = app.scopes or cls.default_scopes
        params = {
            "client_id": app.client_id,
            "redirect_uri": app.redirect_uri,
            "scope": cls.scope_separator.join(scopes),
            "state": state,
            **cls.extra_auth_params,
        }
        return f"{cls.authorize_url}?{urlencode(params)}"

    @classmethod
    async def exchange_code(
        cls,
        app: OAuthApp,
        code: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> OAuthGrant:
        """Exchange the authorization code at the token endpoint."""
        data = await cls._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": app.client_id,
                "client_secret": app.client_secret,
                "code": code,
                "redirect_uri": app.redirect_uri,
            },
            transport=transport,
        )
        return OAuthGrant(credential=cls._credential_from_token(data))

    @classmethod
    async def refresh_credential(
        cls,
        app: OAuthApp,
        refresh_token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> OAuthCredential:
        """Refresh an expired access token (providers with ``supports_refresh``)."""
        if not cls.supports_refresh:
            raise NotImplementedError(f"{cls.display_name} tokens cannot be refreshed")
        data = await cls._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": app.client_id,
                "client_secret": app.client_secret,
                "refresh_token": refresh_token,
            },
            url=cls.refresh_url,
            transport=transport,
        )
        credential = cls._credential_from_token(data)
        # Some providers do not rotate refresh tokens
        if credential.refresh_token is None:
            credential = credential.model_copy(update={"refresh_token": refresh_token})
        return credential

    @classmethod
    async def _token_request(
        cls,
        form: Dict[str, str],
        *,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(transport=transport, timeout=DEFAULT_TIMEOUT) as client:
            resp = await client.post(
                url or cls.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        if resp.status_code >= 400:
            raise ConnectorError(cls.display_name, _error_detail(resp), resp.status_code)
        data = resp.json()
        if "error" in data:
            raise ConnectorError(
                cls.display_name,
                f"OAuth error: {data.get('error_description', data['error'])}",
            )
        return data

    @staticmethod
    def _credential_from_token(data: Mapping[str, Any]) -> OAuthCredential:
        expires_in = data.get("expires_in")
        scope = data.get("scope")
        if isinstance(scope, list):
            scope = " ".join(scope)
        return OAuthCredential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            token_type=data.get("token_type"),
            scope=scope,
        )


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        return str(body.get("message") or body.get("error_description") or err or body)
    return str(body)[:200]
