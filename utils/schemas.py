"""
Pydantic schemas for the integration layer.

Everything that crosses a component boundary lives here: providers,
credentials, the persisted ``IntegrationConfig`` envelope, OAuth state and
the result records returned by the orchestrator.  Models serialise with
camelCase keys so stored documents and API payloads share one shape.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Providers & status
# ═══════════════════════════════════════════════════════════════════════════════


class Provider(str, Enum):
    SOURCE_HOST = "source_host"
    CHAT = "chat"
    DESIGN_TOOL = "design_tool"
    CARD_BOARD = "card_board"
    MAILBOX = "mailbox"
    DEPLOY_PLATFORM = "deploy_platform"
    BAAS = "baas"
    CLOUD = "cloud"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING = "pending"


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials — tagged union on ``kind``
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthCredential(_CamelModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["oauth"] = "oauth"
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        """True once we are inside the 120s refresh buffer."""
        if self.expires_at is None:
            return False
        return self.expires_at < utcnow() + timedelta(seconds=120)


class APIKeyCredential(_CamelModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["api_key"] = "api_key"
    api_key: str = Field(..., min_length=1)
    api_secret: Optional[str] = None
    token: Optional[str] = None


class CloudCredential(_CamelModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["cloud"] = "cloud"
    access_key_id: str = Field(..., min_length=1)
    secret_access_key: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    session_token: Optional[str] = None


Credential = Annotated[
    Union[OAuthCredential, APIKeyCredential, CloudCredential],
    Field(discriminator="kind"),
]

credential_adapter: TypeAdapter = TypeAdapter(Credential)


# Each provider accepts exactly one credential variant.
PROVIDER_CREDENTIALS: Dict[Provider, Type[BaseModel]] = {
    Provider.SOURCE_HOST: OAuthCredential,
    Provider.CHAT: OAuthCredential,
    Provider.DESIGN_TOOL: OAuthCredential,
    Provider.MAILBOX: OAuthCredential,
    Provider.CARD_BOARD: APIKeyCredential,
    Provider.DEPLOY_PLATFORM: APIKeyCredential,
    Provider.BAAS: APIKeyCredential,
    Provider.CLOUD: CloudCredential,
}


class CredentialMismatchError(ValueError):
    """A credential variant was supplied to a provider that cannot use it."""

    def __init__(self, provider: Provider, credential: Any):
        expected = PROVIDER_CREDENTIALS[provider].__name__
        super().__init__(
            f"Provider '{provider.value}' requires {expected}, "
            f"got {type(credential).__name__}"
        )
        self.provider = provider


def check_credential(provider: Provider, credential: Any) -> None:
    if not isinstance(credential, PROVIDER_CREDENTIALS[provider]):
        raise CredentialMismatchError(provider, credential)


# ═══════════════════════════════════════════════════════════════════════════════
# Integration config envelope
# ═══════════════════════════════════════════════════════════════════════════════


class IntegrationMetadata(_CamelModel):
    account_name: Optional[str] = None
    account_email: Optional[str] = None
    avatar_url: Optional[str] = None
    workspace_name: Optional[str] = None
    team_id: Optional[str] = None

    def merged(self, other: "IntegrationMetadata") -> "IntegrationMetadata":
        """Fields set on ``other`` win over ours."""
        return self.model_copy(update=other.model_dump(exclude_none=True))


def config_id(provider: Provider, user_id: str) -> str:
    return f"{provider.value}-{user_id}"


class IntegrationConfig(_CamelModel):
    """Persisted record of one user's connection to one provider."""

    id: str
    provider: Provider
    status: ConnectionStatus
    credential: Optional[Credential] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    connected_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    user_id: str
    metadata: IntegrationMetadata = Field(default_factory=IntegrationMetadata)

    @model_validator(mode="after")
    def _credential_matches_provider(self) -> "IntegrationConfig":
        if self.credential is not None:
            check_credential(self.provider, self.credential)
        return self

    def public_view(self) -> Dict[str, Any]:
        """JSON-safe dump with the credential stripped."""
        return self.model_dump(mode="json", by_alias=True, exclude={"credential"})


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthApp(_CamelModel):
    """
    App registration for one provider.

    OAuth providers use every field; key-and-token providers that offer a
    token-request page only need ``client_id`` (the app key) and ``app_name``.
    """

    client_id: str = Field(..., min_length=1)
    client_secret: str = ""
    redirect_uri: str
    scopes: Optional[List[str]] = None
    app_name: str = ""                 # shown on manual token-request pages


class OAuthState(_CamelModel):
    model_config = ConfigDict(frozen=True)

    provider: Provider
    user_id: str
    redirect_url: str = ""
    timestamp: float
    nonce: str


# ═══════════════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionResult(_CamelModel):
    success: bool
    provider: Provider
    config: Optional[IntegrationConfig] = None
    error: Optional[str] = None

    def public_view(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude={"config"})
        data["config"] = self.config.public_view() if self.config else None
        return data


class SyncResult(_CamelModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    provider: Provider
    items_synced: int = 0
    errors: Optional[List[str]] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def failed(cls, provider: Provider, error: str) -> "SyncResult":
        return cls(success=False, provider=provider, items_synced=0, errors=[error])


class WebhookEvent(_CamelModel):
    """Inbound provider webhook after signature verification."""

    id: str
    provider: Provider
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
