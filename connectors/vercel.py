"""
VercelConnector — the ``deploy_platform`` provider.

Personal access token auth; an optional team id scopes every call.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from connectors.base import BaseConnector, ConnectorError, CredentialForm, ItemSync
from utils.schemas import APIKeyCredential, IntegrationMetadata, Provider

logger = logging.getLogger(__name__)

_VERCEL_API = "https://api.vercel.com"
_VERCEL_TOKENS_URL = "https://vercel.com/account/tokens"


class VercelConnector(BaseConnector):
    """Token connector for Vercel."""

    provider = Provider.DEPLOY_PLATFORM
    display_name = "Vercel"
    icon = "▲"
    credential_form = CredentialForm(
        required=("token",),
        optional=("team_id",),
        help_url=_VERCEL_TOKENS_URL,
    )

    def __init__(self, token: str, team_id: Optional[str] = None, *, transport=None):
        super().__init__(transport=transport)
        self._token = token
        self._team_id = team_id

    @classmethod
    def from_credential(cls, credential, settings, *, transport=None):
        cls._check(credential)
        return cls(credential.api_key, settings.get("team_id"), transport=transport)

    @classmethod
    def credentials_from_fields(cls, fields):
        settings = {"team_id": fields["team_id"]} if fields.get("team_id") else {}
        return APIKeyCredential(api_key=fields["token"]), settings

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _get(self, path: str, **params: Any) -> Any:
        if self._team_id:
            params["teamId"] = self._team_id
        return await self._request("GET", f"{_VERCEL_API}{path}", params=params)

    # ── API ─────────────────────────────────────────────────────────────

    async def get_current_user(self) -> Dict[str, Any]:
        data = await self._get("/v2/user")
        return data.get("user", {})

    async def list_deployments(self, project_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if project_id:
            params["projectId"] = project_id
        data = await self._get("/v6/deployments", **params)
        return data.get("deployments", [])

    async def get_deployment(self, deployment_id: str) -> Dict[str, Any]:
        return await self._get(f"/v13/deployments/{deployment_id}")

    async def identity(self) -> IntegrationMetadata:
        user = await self.get_current_user()
        return IntegrationMetadata(
            account_name=user.get("username"),
            account_email=user.get("email"),
            avatar_url=user.get("avatar"),
            team_id=self._team_id,
        )

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """Recent deployments, each re-read for its current state."""
        result = ItemSync()
        for deployment in await self.list_deployments(settings.get("project_id")):
            uid = deployment.get("uid")
            try:
                await self.get_deployment(uid)
            except ConnectorError as exc:
                result.errors.append(f"Failed to sync deployment {uid}: {exc}")
                continue
            result.items_synced += 1
        return result
