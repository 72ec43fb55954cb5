"""
SupabaseConnector — the ``baas`` provider.

Talks to a project's PostgREST endpoint with its anon key.  The project
URL is not secret and lives in the integration settings.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping
from urllib.parse import urlparse

from connectors.base import BaseConnector, ConnectorError, CredentialForm, ItemSync
from utils.schemas import APIKeyCredential, IntegrationMetadata, Provider

logger = logging.getLogger(__name__)

_DEFAULT_TABLE = "tasks"


class SupabaseConnector(BaseConnector):
    """Anon-key connector for a Supabase project."""

    provider = Provider.BAAS
    display_name = "Supabase"
    icon = "🗄️"
    credential_form = CredentialForm(
        required=("url", "anon_key"),
        help_url="https://supabase.com/dashboard/project/_/settings/api",
    )

    def __init__(self, url: str, anon_key: str, *, transport=None):
        super().__init__(transport=transport)
        self._url = url.rstrip("/")
        self._anon_key = anon_key

    @classmethod
    def from_credential(cls, credential, settings, *, transport=None):
        cls._check(credential)
        url = settings.get("url")
        if not url:
            raise ConnectorError(cls.display_name, "project url missing from settings")
        return cls(url, credential.api_key, transport=transport)

    @classmethod
    def credentials_from_fields(cls, fields):
        return APIKeyCredential(api_key=fields["anon_key"]), {"url": fields["url"]}

    def _headers(self) -> Dict[str, str]:
        return {"apikey": self._anon_key, "Authorization": f"Bearer {self._anon_key}"}

    # ── API ─────────────────────────────────────────────────────────────

    async def select(self, table: str, limit: int = 1000) -> List[Dict[str, Any]]:
        return await self._request(
            "GET",
            f"{self._url}/rest/v1/{table}",
            params={"select": "*", "limit": limit},
        )

    async def identity(self) -> IntegrationMetadata:
        """Health probe: the REST root answers only with a valid key."""
        await self._request("GET", f"{self._url}/rest/v1/")
        return IntegrationMetadata(workspace_name=urlparse(self._url).hostname)

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """Rows of ``settings["table"]`` (default ``tasks``)."""
        table = settings.get("table") or _DEFAULT_TABLE
        rows = await self.select(table)
        return ItemSync(items_synced=len(rows or []))
