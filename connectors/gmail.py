"""
GmailConnector — the ``mailbox`` provider.

Uses Google's OAuth2 web flow to get per-user Gmail access without the
user sharing any credentials with the application.  ``access_type=offline``
plus ``prompt=consent`` makes Google return a refresh token every time.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from connectors.base import ConnectorError, ItemSync, OAuthConnector
from utils.schemas import IntegrationMetadata, Provider

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GMAIL_API = "https://gmail.googleapis.com/gmail/v1"

_DEFAULT_QUERY = "in:inbox newer_than:7d"


class GmailConnector(OAuthConnector):
    """OAuth2 connector for Gmail."""

    provider = Provider.MAILBOX
    display_name = "Gmail"
    icon = "📧"

    authorize_url = _GOOGLE_AUTH_URL
    token_url = _GOOGLE_TOKEN_URL
    default_scopes = [
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.send",
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ]
    extra_auth_params = {
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
    }
    supports_refresh = True

    # ── API ─────────────────────────────────────────────────────────────

    async def get_profile(self) -> Dict[str, Any]:
        return await self._request("GET", f"{_GMAIL_API}/users/me/profile")

    async def list_messages(self, query: str, max_results: int = 50) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{_GMAIL_API}/users/me/messages",
            params={"q": query, "maxResults": max_results},
        )
        return data.get("messages", [])

    async def get_message(self, message_id: str, fmt: str = "metadata") -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"{_GMAIL_API}/users/me/messages/{message_id}",
            params={"format": fmt},
        )

    async def identity(self) -> IntegrationMetadata:
        profile = await self.get_profile()
        return IntegrationMetadata(account_email=profile.get("emailAddress"))

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """
        Fetch message metadata for ``settings["query"]`` (default: last
        week's inbox).  A message that cannot be read is skipped.
        """
        query: Optional[str] = settings.get("query") or _DEFAULT_QUERY
        limit = int(settings.get("max_results") or 50)

        result = ItemSync()
        for ref in await self.list_messages(query, max_results=limit):
            try:
                await self.get_message(ref["id"])
            except ConnectorError as exc:
                result.errors.append(f"Failed to read message {ref.get('id')}: {exc}")
                continue
            result.items_synced += 1
        return result
