"""
TrelloConnector — the ``card_board`` provider.

Trello authenticates every call with an app API key plus a user token,
both sent as query parameters.  The user obtains the token from the
authorize page (``token_request_url``) and pastes both into the form.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from connectors.base import BaseConnector, ConnectorError, CredentialForm, ItemSync
from utils.schemas import APIKeyCredential, IntegrationMetadata, OAuthApp, Provider

logger = logging.getLogger(__name__)

_TRELLO_API = "https://api.trello.com/1"
_TRELLO_AUTH_URL = "https://trello.com/1/authorize"
_TRELLO_KEY_URL = "https://trello.com/app-key"


class TrelloConnector(BaseConnector):
    """API key + token connector for Trello."""

    provider = Provider.CARD_BOARD
    display_name = "Trello"
    icon = "📋"
    credential_form = CredentialForm(required=("api_key", "token"), help_url=_TRELLO_KEY_URL)

    def __init__(self, api_key: str, token: str, *, transport=None):
        super().__init__(transport=transport)
        self._api_key = api_key
        self._token = token

    @classmethod
    def from_credential(cls, credential, settings, *, transport=None):
        cls._check(credential)
        if not credential.token:
            raise ConnectorError(cls.display_name, "credential has no user token")
        return cls(credential.api_key, credential.token, transport=transport)

    @classmethod
    def credentials_from_fields(cls, fields):
        return APIKeyCredential(api_key=fields["api_key"], token=fields["token"]), {}

    @staticmethod
    def token_request_url(api_key: str, app_name: str, return_url: Optional[str] = None) -> str:
        """Page where a user grants ``app_name`` a token for ``api_key``."""
        params = {
            "key": api_key,
            "name": app_name,
            "scope": "read,write",
            "expiration": "never",
            "response_type": "token",
        }
        if return_url:
            params["return_url"] = return_url
        return f"{_TRELLO_AUTH_URL}?{urlencode(params)}"

    @classmethod
    def token_page_url(cls, app: OAuthApp, return_url: str = "") -> Optional[str]:
        return cls.token_request_url(app.client_id, app.app_name or "Integrations", return_url or None)

    async def _get(self, path: str, **params: Any) -> Any:
        query = {"key": self._api_key, "token": self._token, **params}
        return await self._request("GET", f"{_TRELLO_API}{path}", params=query)

    # ── API ─────────────────────────────────────────────────────────────

    async def get_current_member(self) -> Dict[str, Any]:
        return await self._get("/members/me")

    async def get_boards(self, filter_: str = "open") -> List[Dict[str, Any]]:
        return await self._get("/members/me/boards", filter=filter_)

    async def get_board_cards(self, board_id: str) -> List[Dict[str, Any]]:
        return await self._get(f"/boards/{board_id}/cards")

    async def identity(self) -> IntegrationMetadata:
        member = await self.get_current_member()
        return IntegrationMetadata(
            account_name=member.get("username"),
            avatar_url=member.get("avatarUrl"),
        )

    async def sync_items(self, settings: Mapping[str, Any]) -> ItemSync:
        """Cards on ``settings["board_ids"]`` or on every open board."""
        board_ids = list(settings.get("board_ids") or [])
        if not board_ids:
            board_ids = [b["id"] for b in await self.get_boards()]

        result = ItemSync()
        for board_id in board_ids:
            try:
                cards = await self.get_board_cards(board_id)
            except ConnectorError as exc:
                result.errors.append(f"Failed to fetch cards for board {board_id}: {exc}")
                continue
            result.items_synced += len(cards)
        return result
