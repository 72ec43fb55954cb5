"""
SlackConnector — the ``chat`` provider.

Slack's Web API answers HTTP 200 with ``{"ok": false, "error": ...}`` on
failure, so every call goes through ``_call`` which checks ``ok``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from connectors.base import DEFAULT_TIMEOUT, ConnectorError, ItemSync, OAuthConnector, OAuthGrant
from utils.schemas import IntegrationMetadata, OAuthCredential, Provider

logger = logging.getLogger(__name__)

_SLACK_API = "https://slack.com/api"
_SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
_SLACK_TOKEN_URL = "https://slack.com/api/oauth.v2.access"


class SlackConnector(OAuthConnector):
    """OAuth2 (v2, bot token) connector for Slack."""

    provider = Provider.CHAT
    display_name = "Slack"
    icon = "💬"

    authorize_url = _SLACK_AUTH_URL
    token_url = _SLACK_TOKEN_URL
    default_scopes = [
        "chat:write",
        "channels:read",
        "groups:read",
        "users:read",
        "commands",
        "incoming-webhook",
        "app_mentions:read",
    ]
    scope_separator = ","

    @classmethod
    async def exchange_code(cls, app, code, *, transport=None) -> OAuthGrant:
        async with httpx.AsyncClient(transport=transport, timeout=DEFAULT_TIMEOUT) as client:
            resp = await client.post(
                cls.token_url,
                data={
                    "client_id": app.client_id,
                    "client_secret": app.client_secret,
                    "code": code,
                    "redirect_uri": app.redirect_uri,
                },
            )
        data = resp.json()
        if not data.get("ok"):
            raise ConnectorError(cls.display_name, f"OAuth error: {data.get('error', 'unknown')}")

        team = data.get("team") or {}
        settings: Dict[str, Any] = {}
        hook = data.get("incoming_webhook")
        if hook:
            settings["incoming_webhook"] = {"url": hook.get("url"), "channel": hook.get("channel")}
        return OAuthGrant(
            credential=OAuthCredential(
                access_token=data["access_token"],
                token_type=data.get("token_type"),
                scope=data.get("scope"),
            ),
            metadata=IntegrationMetadata(workspace_name=team.get("name"), team_id=team.get("id")),
            settings=settings,
        )

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = await self._request("POST", f"{_SLACK_API}/{method}", data=params or {})
        if not data or not data.get("ok"):
            raise ConnectorError(self.display_name, (data or {}).get("error", "unknown_error"))
        return data

    # ── API ─────────────────────────────────────────────────────────────

    async def test_auth(self) -> Dict[str, Any]:
        return await self._call("auth.test")

    async def list_channels(self, limit: int = 200) -> List[Dict[str, Any]]:
        data = await self._call(
            "conversations.list",
            {"limit": limit, "exclude_archived": "true", "types": "public_channel,private_channel"},
        )
        return data.get("channels", [])

    async def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None) -> Dict[str, Any]:
        params = {"channel": channel, "text": text}
        if thread_ts:
            params["thread_ts"] = thread_ts
        data = await self._call("chat.postMessage", params)
        return data.get("message", {})

    async def identity(self) -> IntegrationMetadata:
        auth = await self.test_auth()
        return IntegrationMetadata(
            account_name=auth.get("user"),
            workspace_name=auth.get("team"),
            team_id=auth.get("team_id"),
        )

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """Channels the bot can see; channels without an id are reported."""
        result = ItemSync()
        for channel in await self.list_channels():
            if not channel.get("id"):
                result.errors.append(f"Channel without id: {channel.get('name')}")
                continue
            result.items_synced += 1
        return result
