"""
GitHubConnector — the ``source_host`` provider.

OAuth App flow for per-user tokens; issues from the configured
repositories (or the user's own repositories) are pulled on sync.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

from connectors.base import ConnectorError, ItemSync, OAuthConnector, OAuthGrant
from utils.schemas import IntegrationMetadata, Provider

logger = logging.getLogger(__name__)

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"


class GitHubConnector(OAuthConnector):
    """OAuth2 connector for GitHub."""

    provider = Provider.SOURCE_HOST
    display_name = "GitHub"
    icon = "🐙"

    authorize_url = _GH_AUTH_URL
    token_url = _GH_TOKEN_URL
    default_scopes = ["repo", "read:user", "read:org"]
    extra_auth_params = {"allow_signup": "true"}

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @classmethod
    async def exchange_code(cls, app, code, *, transport=None) -> OAuthGrant:
        # GitHub answers 200 with an ``error`` field on bad codes;
        # _token_request turns that into a ConnectorError.
        data = await cls._token_request(
            {
                "client_id": app.client_id,
                "client_secret": app.client_secret,
                "code": code,
                "redirect_uri": app.redirect_uri,
            },
            transport=transport,
        )
        credential = cls._credential_from_token(data)
        # GitHub reports scopes comma-separated
        if credential.scope:
            credential = credential.model_copy(
                update={"scope": " ".join(s for s in credential.scope.split(",") if s)}
            )
        return OAuthGrant(credential=credential)

    # ── API ─────────────────────────────────────────────────────────────

    async def get_current_user(self) -> Dict[str, Any]:
        return await self._request("GET", f"{_GH_API}/user")

    async def list_repositories(self, per_page: int = 100) -> List[Dict[str, Any]]:
        return await self._request(
            "GET",
            f"{_GH_API}/user/repos",
            params={"per_page": per_page, "sort": "updated"},
        )

    async def list_issues(self, full_name: str, state: str = "all") -> List[Dict[str, Any]]:
        return await self._request(
            "GET",
            f"{_GH_API}/repos/{full_name}/issues",
            params={"state": state, "per_page": 100},
        )

    async def identity(self) -> IntegrationMetadata:
        user = await self.get_current_user()
        return IntegrationMetadata(
            account_name=user.get("login"),
            account_email=user.get("email"),
            avatar_url=user.get("avatar_url"),
        )

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """
        Pull issues from ``settings["repositories"]`` ("owner/name" entries).

        Without that setting the user's most recently updated repositories
        are used.  One unreachable repository does not stop the others.
        """
        repositories = list(settings.get("repositories") or [])
        if not repositories:
            repositories = [r["full_name"] for r in await self.list_repositories()]

        result = ItemSync()
        for full_name in repositories:
            try:
                issues = await self.list_issues(full_name)
            except ConnectorError as exc:
                result.errors.append(f"Failed to fetch issues for {full_name}: {exc}")
                continue
            for issue in issues:
                if issue.get("number") is None or not issue.get("title"):
                    result.errors.append(f"Skipped malformed issue in {full_name}: {issue.get('id')}")
                    continue
                result.items_synced += 1
        logger.debug(
            "GitHub sync: %d issues across %d repositories",
            result.items_synced,
            len(repositories),
        )
        return result
