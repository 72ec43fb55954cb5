"""
FigmaConnector — the ``design_tool`` provider.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

from connectors.base import ConnectorError, ItemSync, OAuthConnector
from utils.schemas import IntegrationMetadata, Provider

logger = logging.getLogger(__name__)

_FIGMA_API = "https://api.figma.com/v1"
_FIGMA_AUTH_URL = "https://www.figma.com/oauth"
_FIGMA_TOKEN_URL = "https://www.figma.com/api/oauth/token"
_FIGMA_REFRESH_URL = "https://www.figma.com/api/oauth/refresh"


class FigmaConnector(OAuthConnector):
    """OAuth2 connector for Figma."""

    provider = Provider.DESIGN_TOOL
    display_name = "Figma"
    icon = "🎨"

    authorize_url = _FIGMA_AUTH_URL
    token_url = _FIGMA_TOKEN_URL
    default_scopes = ["file_read"]
    extra_auth_params = {"response_type": "code"}
    supports_refresh = True
    refresh_url = _FIGMA_REFRESH_URL

    # ── API ─────────────────────────────────────────────────────────────

    async def get_current_user(self) -> Dict[str, Any]:
        return await self._request("GET", f"{_FIGMA_API}/me")

    async def get_team_projects(self, team_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{_FIGMA_API}/teams/{team_id}/projects")
        return data.get("projects", [])

    async def get_project_files(self, project_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{_FIGMA_API}/projects/{project_id}/files")
        return data.get("files", [])

    async def identity(self) -> IntegrationMetadata:
        user = await self.get_current_user()
        return IntegrationMetadata(
            account_name=user.get("handle"),
            account_email=user.get("email"),
            avatar_url=user.get("img_url"),
        )

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """
        Files of every project in ``settings["team_id"]``.

        Figma has no "list my teams" endpoint, so a team id must be set.
        """
        team_id = settings.get("team_id")
        if not team_id:
            return ItemSync(errors=["No Figma team configured (settings.team_id)"])

        result = ItemSync()
        for project in await self.get_team_projects(str(team_id)):
            try:
                files = await self.get_project_files(str(project["id"]))
            except ConnectorError as exc:
                result.errors.append(f"Failed to fetch files for project {project.get('name')}: {exc}")
                continue
            result.items_synced += len(files)
        return result
