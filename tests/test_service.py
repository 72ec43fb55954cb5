"""
Integration-level tests for IntegrationService and IntegrationHub.

Provider APIs are faked at the HTTP layer with ``httpx.MockTransport`` so
the real connector classes run end to end.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conftest import OAUTH_APPS, STATE_SECRET, FakeProviderAPI, make_service
from connectors.github import GitHubConnector
from connectors.oauth_state import OAuthStateManager
from connectors.service import IntegrationHub
from connectors.store import InMemoryBackend, KeyValueIntegrationStore, StoreError
from connectors.trello import TrelloConnector
from utils.schemas import (
    CloudCredential,
    ConnectionStatus,
    IntegrationConfig,
    OAuthApp,
    OAuthCredential,
    Provider,
    config_id,
    utcnow,
)

TRELLO_FIELDS = {"apiKey": "trello-key", "token": "trello-token"}
TRELLO_APP = OAuthApp(client_id="trello-app-key", redirect_uri="http://localhost:8000", app_name="Orchestrator")
GMAIL_TOKEN_URL = "https://oauth2.googleapis.com/token"


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def _github_api(api: FakeProviderAPI) -> None:
    api.add(
        "POST",
        "https://github.com/login/oauth/access_token",
        json={"access_token": "gho_abc", "token_type": "bearer", "scope": "repo,read:user"},
    )
    api.add("GET", "https://api.github.com/user", json={"login": "octocat", "email": "octo@example.com"})


def _trello_api(api: FakeProviderAPI, member_status: int = 200) -> None:
    api.add("GET", "https://api.trello.com/1/members/me", json={"username": "trello-user"}, status=member_status)
    api.add("GET", "https://api.trello.com/1/members/me/boards", json=[{"id": "b1"}, {"id": "b2"}])
    api.add("GET", "https://api.trello.com/1/boards/b1/cards", json=[{"id": "c1"}, {"id": "c2"}, {"id": "c3"}])
    api.add("GET", "https://api.trello.com/1/boards/b2/cards", json={"message": "board gone"}, status=500)


def _vercel_api(api: FakeProviderAPI) -> None:
    api.add("GET", "https://api.vercel.com/v2/user", json={"user": {"username": "vercel-user"}})
    api.add("GET", "https://api.vercel.com/v6/deployments", json={"deployments": [{"uid": "d1"}]})
    api.add("GET", "https://api.vercel.com/v13/deployments/d1", json={"uid": "d1", "readyState": "READY"})


def _supabase_api(api: FakeProviderAPI, table_status: int = 200) -> None:
    api.add("GET", "https://proj.supabase.co/rest/v1/", json={})
    api.add("GET", "https://proj.supabase.co/rest/v1/tasks", json=[{"id": 1}] if table_status == 200 else {"message": "down"}, status=table_status)


async def _expired_mailbox_store() -> KeyValueIntegrationStore:
    store = KeyValueIntegrationStore(InMemoryBackend(), "u1")
    await store.save(
        IntegrationConfig(
            id=config_id(Provider.MAILBOX, "u1"),
            provider=Provider.MAILBOX,
            status=ConnectionStatus.CONNECTED,
            credential=OAuthCredential(
                access_token="old",
                refresh_token="refresh-1",
                expires_at=utcnow() - timedelta(minutes=5),
            ),
            user_id="u1",
        )
    )
    return store


class TestOAuthFlow:
    @pytest.mark.asyncio
    async def test_source_host_connects_for_user(self, api):
        _github_api(api)
        service = make_service(api)

        url = service.get_authorization_url(Provider.SOURCE_HOST, "u1")
        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://github.com/login/oauth/authorize?")
        assert query["client_id"] == ["source_host-client"]
        assert query["redirect_uri"] == [OAUTH_APPS[Provider.SOURCE_HOST].redirect_uri]
        assert query["scope"] == ["repo read:user read:org"]
        assert service.get_status(Provider.SOURCE_HOST) == ConnectionStatus.PENDING

        result = await service.handle_oauth_callback(Provider.SOURCE_HOST, "code-1", query["state"][0])

        assert result.success, result.error
        config = service.get_config(Provider.SOURCE_HOST)
        assert config.provider == Provider.SOURCE_HOST
        assert config.user_id == "u1"
        assert config.id == "source_host-u1"
        assert config.status == ConnectionStatus.CONNECTED
        assert config.credential.access_token == "gho_abc"
        assert config.credential.scope == "repo read:user"
        assert config.metadata.account_name == "octocat"
        assert isinstance(service.get_connector(Provider.SOURCE_HOST), GitHubConnector)

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, api):
        _github_api(api)
        service = make_service(api)
        state = _state_from(service.get_authorization_url(Provider.SOURCE_HOST, "u1"))

        assert (await service.handle_oauth_callback(Provider.SOURCE_HOST, "code", state)).success
        calls = len(api.calls)

        replay = await service.handle_oauth_callback(Provider.SOURCE_HOST, "code", state)
        assert not replay.success
        assert replay.error == "Invalid or expired OAuth state"
        assert len(api.calls) == calls

    @pytest.mark.asyncio
    async def test_invalid_state_makes_no_network_call(self, api):
        service = make_service(api)
        result = await service.handle_oauth_callback(Provider.SOURCE_HOST, "code", "forged")
        assert not result.success
        assert result.error == "Invalid or expired OAuth state"
        assert api.calls == []
        assert service.get_status(Provider.SOURCE_HOST) == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_state_for_other_provider_rejected(self, api):
        service = make_service(api)
        state = _state_from(service.get_authorization_url(Provider.SOURCE_HOST, "u1"))
        result = await service.handle_oauth_callback(Provider.CHAT, "code", state)
        assert not result.success
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, api):
        clock = MagicMock(return_value=1000.0)
        service = make_service(api, state_manager=OAuthStateManager(STATE_SECRET, clock=clock))
        state = _state_from(service.get_authorization_url(Provider.SOURCE_HOST, "u1"))
        clock.return_value = 1000.0 + 601
        result = await service.handle_oauth_callback(Provider.SOURCE_HOST, "code", state)
        assert not result.success
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_exchange_failure_is_a_result(self, api):
        api.add(
            "POST",
            "https://github.com/login/oauth/access_token",
            json={"error": "bad_verification_code", "error_description": "The code is incorrect"},
        )
        service = make_service(api)
        state = _state_from(service.get_authorization_url(Provider.SOURCE_HOST, "u1"))
        result = await service.handle_oauth_callback(Provider.SOURCE_HOST, "bad", state)
        assert not result.success
        assert "The code is incorrect" in result.error
        assert service.get_config(Provider.SOURCE_HOST) is None
        assert service.get_status(Provider.SOURCE_HOST) == ConnectionStatus.ERROR
        assert "The code is incorrect" in service.get_last_error(Provider.SOURCE_HOST)

    @pytest.mark.asyncio
    async def test_state_for_other_user_rejected(self, api):
        _github_api(api)
        shared = OAuthStateManager(STATE_SECRET)
        u1 = make_service(api, state_manager=shared)
        u2 = make_service(api, store=KeyValueIntegrationStore(InMemoryBackend(), "u2"), state_manager=shared)
        state = _state_from(u2.get_authorization_url(Provider.SOURCE_HOST, "u2"))

        result = await u1.handle_oauth_callback(Provider.SOURCE_HOST, "code", state)

        assert not result.success
        assert result.error == "Invalid or expired OAuth state"
        assert api.calls == []
        assert await u1._store.load() == []
        assert u1.get_config(Provider.SOURCE_HOST) is None

    def test_no_url_for_credential_provider(self):
        service = make_service()
        assert service.get_authorization_url(Provider.CARD_BOARD, "u1") is None
        assert service.get_status(Provider.CARD_BOARD) == ConnectionStatus.DISCONNECTED

    def test_card_board_token_page(self):
        service = make_service(oauth_apps={Provider.CARD_BOARD: TRELLO_APP})
        url = service.get_authorization_url(Provider.CARD_BOARD, "u1", "http://app.local/done")

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://trello.com/1/authorize?")
        assert query["key"] == ["trello-app-key"]
        assert query["name"] == ["Orchestrator"]
        assert query["return_url"] == ["http://app.local/done"]
        assert "state" not in query
        assert len(service.state_manager) == 0

    def test_no_url_without_app_registration(self):
        service = make_service(oauth_apps={})
        assert service.get_authorization_url(Provider.SOURCE_HOST, "u1") is None

    def test_slack_scopes_comma_separated(self):
        service = make_service()
        query = parse_qs(urlparse(service.get_authorization_url(Provider.CHAT, "u1")).query)
        assert "," in query["scope"][0]


class TestCredentialConnect:
    @pytest.mark.asyncio
    async def test_card_board_connects(self, api):
        _trello_api(api)
        service = make_service(api)
        result = await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")

        assert result.success, result.error
        config = service.get_config(Provider.CARD_BOARD)
        assert config.status == ConnectionStatus.CONNECTED
        assert config.credential.api_key == "trello-key"
        assert config.credential.token == "trello-token"
        assert config.metadata.account_name == "trello-user"
        # stored credential rebuilds the same connector class
        assert isinstance(service.registry.build(config), TrelloConnector)
        assert isinstance(service.get_connector_as(Provider.CARD_BOARD, TrelloConnector), TrelloConnector)

    @pytest.mark.asyncio
    async def test_probe_failure_keeps_nothing(self, api):
        _trello_api(api, member_status=401)
        service = make_service(api)
        result = await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")

        assert not result.success
        assert service.get_config(Provider.CARD_BOARD) is None
        assert service.get_status(Provider.CARD_BOARD) == ConnectionStatus.ERROR
        assert "401" in service.get_last_error(Provider.CARD_BOARD)

    @pytest.mark.asyncio
    async def test_probe_failure_leaves_prior_config(self, api):
        _trello_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")
        before = service.get_config(Provider.CARD_BOARD)

        _trello_api(api, member_status=401)
        result = await service.connect_with_credentials(Provider.CARD_BOARD, {"api_key": "k2", "token": "t2"}, "u1")

        assert not result.success
        assert service.get_config(Provider.CARD_BOARD) == before
        assert service.get_status(Provider.CARD_BOARD) == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_missing_fields_skip_probe(self, api):
        service = make_service(api)
        result = await service.connect_with_credentials(Provider.CARD_BOARD, {"apiKey": "k", "token": "  "}, "u1")
        assert not result.success
        assert "token" in result.error
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_oauth_provider_rejects_credentials(self, api):
        service = make_service(api)
        result = await service.connect_with_credentials(Provider.SOURCE_HOST, {"token": "x"}, "u1")
        assert not result.success
        assert "does not support credential authentication" in result.error
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_optional_fields_land_in_settings(self, api):
        _vercel_api(api)
        _supabase_api(api)
        service = make_service(api)

        vercel = await service.connect_with_credentials(Provider.DEPLOY_PLATFORM, {"token": "v", "teamId": "team_9"}, "u1")
        supabase = await service.connect_with_credentials(
            Provider.BAAS, {"url": "https://proj.supabase.co", "anonKey": "anon"}, "u1"
        )

        assert vercel.success and supabase.success
        assert service.get_config(Provider.DEPLOY_PLATFORM).settings == {"team_id": "team_9"}
        assert service.get_config(Provider.BAAS).settings == {"url": "https://proj.supabase.co"}
        assert service.get_config(Provider.BAAS).metadata.workspace_name == "proj.supabase.co"
        team_call = next(r for r in api.calls if r.url.path == "/v2/user")
        assert team_call.url.params["teamId"] == "team_9"

    @pytest.mark.asyncio
    async def test_save_failure_is_a_result(self, api):
        _trello_api(api)
        service = make_service(api)
        with patch.object(service._store, "save", AsyncMock(side_effect=StoreError("disk full"))):
            result = await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")
        assert not result.success
        assert "disk full" in result.error
        assert service.get_config(Provider.CARD_BOARD) is None


class TestCloudConnect:
    @pytest.mark.asyncio
    async def test_cloud_credential_probe(self):
        session = MagicMock()
        session.region_name = "eu-west-1"
        session.client.return_value.get_caller_identity.return_value = {"Account": "123456789012"}

        service = make_service()
        with patch("connectors.aws.boto3.session.Session", return_value=session) as ctor:
            result = await service.connect_cloud_credentials(
                CloudCredential(access_key_id="AK", secret_access_key="SK", region="eu-west-1"), "u1"
            )

        assert result.success, result.error
        ctor.assert_called_once_with(
            aws_access_key_id="AK",
            aws_secret_access_key="SK",
            aws_session_token=None,
            region_name="eu-west-1",
        )
        config = service.get_config(Provider.CLOUD)
        assert config.metadata.account_name == "123456789012"
        assert config.settings == {"region": "eu-west-1"}

    @pytest.mark.asyncio
    async def test_cloud_via_credential_form(self):
        session = MagicMock()
        session.client.return_value.get_caller_identity.side_effect = RuntimeError("InvalidClientTokenId")

        service = make_service()
        with patch("connectors.aws.boto3.session.Session", return_value=session):
            result = await service.connect_with_credentials(
                Provider.CLOUD,
                {"accessKeyId": "AK", "secretAccessKey": "SK", "region": "us-east-1"},
                "u1",
            )

        assert not result.success
        assert "InvalidClientTokenId" in result.error
        assert service.get_config(Provider.CLOUD) is None

    @pytest.mark.asyncio
    async def test_cloud_missing_region(self):
        service = make_service()
        result = await service.connect_with_credentials(Provider.CLOUD, {"accessKeyId": "AK", "secretAccessKey": "SK"}, "u1")
        assert not result.success
        assert "region" in result.error


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_then_sync(self, api):
        _trello_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")
        assert service.get_connector(Provider.CARD_BOARD) is not None

        await service.disconnect(Provider.CARD_BOARD)

        assert service.get_config(Provider.CARD_BOARD) is None
        assert service.get_status(Provider.CARD_BOARD) == ConnectionStatus.DISCONNECTED
        assert Provider.CARD_BOARD not in service.registry
        assert await service._store.load() == []

        result = await service.sync(Provider.CARD_BOARD)
        assert not result.success
        assert result.items_synced == 0
        assert result.errors

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        service = make_service()
        assert (await service.disconnect(Provider.CHAT)).success
        assert (await service.disconnect(Provider.CHAT)).success
        assert service.get_status(Provider.CHAT) == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_delete_failure_keeps_connection(self, api):
        _trello_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")

        with patch.object(service._store, "delete", AsyncMock(side_effect=StoreError("locked"))):
            result = await service.disconnect(Provider.CARD_BOARD)

        assert not result.success
        assert "locked" in result.error
        assert service.is_connected(Provider.CARD_BOARD)
        assert "locked" in service.get_last_error(Provider.CARD_BOARD)
        assert len(await service._store.load()) == 1


class TestSync:
    @pytest.mark.asyncio
    async def test_not_connected(self):
        result = await make_service().sync(Provider.SOURCE_HOST)
        assert not result.success
        assert result.items_synced == 0
        assert result.errors == ["Integration not connected"]

    @pytest.mark.asyncio
    async def test_partial_failure_still_succeeds(self, api):
        _trello_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")

        result = await service.sync(Provider.CARD_BOARD)

        assert result.success
        assert result.items_synced == 3
        assert len(result.errors) == 1
        assert "b2" in result.errors[0]
        stored = (await service._store.load())[0]
        assert stored.last_sync_at == result.timestamp
        assert service.get_config(Provider.CARD_BOARD).last_sync_at == result.timestamp

    @pytest.mark.asyncio
    async def test_total_failure(self, api):
        _supabase_api(api, table_status=503)
        service = make_service(api)
        await service.connect_with_credentials(Provider.BAAS, {"url": "https://proj.supabase.co", "anon_key": "a"}, "u1")

        result = await service.sync(Provider.BAAS)

        assert not result.success
        assert result.items_synced == 0
        assert "503" in result.errors[0]
        assert service.is_connected(Provider.BAAS)
        assert service.get_config(Provider.BAAS).last_sync_at is None

    @pytest.mark.asyncio
    async def test_last_sync_write_failure_reported(self, api):
        _vercel_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.DEPLOY_PLATFORM, {"token": "v"}, "u1")

        with patch.object(service._store, "save", AsyncMock(side_effect=StoreError("read-only"))):
            result = await service.sync(Provider.DEPLOY_PLATFORM)

        assert result.success
        assert result.items_synced == 1
        assert any("read-only" in e for e in result.errors)
        assert service.get_config(Provider.DEPLOY_PLATFORM).last_sync_at is None

    @pytest.mark.asyncio
    async def test_sync_all_isolates_failures(self, api):
        _trello_api(api)
        _vercel_api(api)
        _supabase_api(api, table_status=500)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")
        await service.connect_with_credentials(Provider.DEPLOY_PLATFORM, {"token": "v"}, "u1")
        await service.connect_with_credentials(Provider.BAAS, {"url": "https://proj.supabase.co", "anon_key": "a"}, "u1")

        results = await service.sync_all()

        assert len(results) == 3
        assert {r.provider for r in results} == {Provider.CARD_BOARD, Provider.DEPLOY_PLATFORM, Provider.BAAS}
        failed = [r for r in results if not r.success]
        assert [r.provider for r in failed] == [Provider.BAAS]

    @pytest.mark.asyncio
    async def test_sync_all_empty(self):
        assert await make_service().sync_all() == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_sync(self, api):
        store = await _expired_mailbox_store()
        api.add("POST", GMAIL_TOKEN_URL, json={"access_token": "new", "expires_in": 3600})
        api.add("GET", "https://gmail.googleapis.com/gmail/v1/users/me/messages", json={"messages": []})

        service = make_service(api, store=store)
        await service.load()
        result = await service.sync(Provider.MAILBOX)

        assert result.success, result.errors
        credential = service.get_config(Provider.MAILBOX).credential
        assert credential.access_token == "new"
        assert credential.refresh_token == "refresh-1"
        list_call = next(r for r in api.calls if r.url.path.endswith("/messages"))
        assert list_call.headers["Authorization"] == "Bearer new"
        assert (await store.load())[0].credential.access_token == "new"

    @pytest.mark.asyncio
    async def test_disconnect_during_refresh_stays_disconnected(self, api):
        store = await _expired_mailbox_store()
        released = asyncio.Event()

        async def slow_token_endpoint(request):
            await released.wait()
            return httpx.Response(200, json={"access_token": "new", "expires_in": 3600})

        api.add("POST", GMAIL_TOKEN_URL, responder=slow_token_endpoint)
        api.add("GET", "https://gmail.googleapis.com/gmail/v1/users/me/messages", json={"messages": []})

        service = make_service(api, store=store)
        await service.load()
        sync = asyncio.create_task(service.sync(Provider.MAILBOX))
        for _ in range(1000):
            if api.calls:
                break
            await asyncio.sleep(0)
        assert api.paths() == ["POST oauth2.googleapis.com/token"]

        await service.disconnect(Provider.MAILBOX)
        released.set()
        result = await sync

        assert not result.success
        assert service.get_config(Provider.MAILBOX) is None
        assert Provider.MAILBOX not in service.registry
        assert await store.load() == []
        assert not any(r.url.path.endswith("/messages") for r in api.calls)


class TestAccessors:
    @pytest.mark.asyncio
    async def test_load_mirrors_store(self, api):
        _trello_api(api)
        store = KeyValueIntegrationStore(InMemoryBackend(), "u1")
        first = make_service(api, store=store)
        await first.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")

        second = make_service(api, store=store)
        await second.load()
        assert second.is_connected(Provider.CARD_BOARD)
        assert [c.provider for c in second.get_all_configs()] == [Provider.CARD_BOARD]

    @pytest.mark.asyncio
    async def test_update_settings_merges_and_evicts(self, api):
        _trello_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")
        cached = service.get_connector(Provider.CARD_BOARD)

        updated = await service.update_settings(Provider.CARD_BOARD, {"board_ids": ["b1"]})

        assert updated.success
        assert updated.config.settings == {"board_ids": ["b1"]}
        assert service.get_connector(Provider.CARD_BOARD) is not cached
        result = await service.sync(Provider.CARD_BOARD)
        assert result.items_synced == 3
        assert result.errors is None

    @pytest.mark.asyncio
    async def test_update_settings_unknown_provider(self):
        result = await make_service().update_settings(Provider.CHAT, {"x": 1})
        assert not result.success
        assert result.config is None
        assert result.error == "Integration not connected"

    @pytest.mark.asyncio
    async def test_update_settings_save_failure(self, api):
        _trello_api(api)
        service = make_service(api)
        await service.connect_with_credentials(Provider.CARD_BOARD, TRELLO_FIELDS, "u1")

        with patch.object(service._store, "save", AsyncMock(side_effect=StoreError("read-only"))):
            result = await service.update_settings(Provider.CARD_BOARD, {"board_ids": ["b1"]})

        assert not result.success
        assert "read-only" in result.error
        assert service.get_config(Provider.CARD_BOARD).settings == {}
        assert service.get_status(Provider.CARD_BOARD) == ConnectionStatus.CONNECTED
        assert "read-only" in service.get_last_error(Provider.CARD_BOARD)

    def test_credential_forms(self):
        service = make_service()
        assert service.get_credential_form(Provider.CARD_BOARD).required == ("api_key", "token")
        assert service.get_credential_form(Provider.CLOUD).optional == ("session_token",)
        assert service.get_credential_form(Provider.SOURCE_HOST) is None

    def test_list_providers(self):
        service = make_service(oauth_apps={Provider.SOURCE_HOST: OAUTH_APPS[Provider.SOURCE_HOST]})
        catalogue = {p["provider"]: p for p in service.list_providers()}
        assert len(catalogue) == 8
        assert catalogue["source_host"]["auth"] == "oauth"
        assert catalogue["source_host"]["configured"] is True
        assert catalogue["chat"]["configured"] is False
        assert catalogue["card_board"]["auth"] == "credentials"
        assert catalogue["card_board"]["credential_form"]["required"] == ["api_key", "token"]
        assert catalogue["card_board"]["credential_form"]["help_url"] == "https://trello.com/app-key"
        assert catalogue["baas"]["status"] == "disconnected"

    def test_list_providers_links_token_page(self):
        service = make_service(oauth_apps={Provider.CARD_BOARD: TRELLO_APP})
        catalogue = {p["provider"]: p for p in service.list_providers()}
        help_url = catalogue["card_board"]["credential_form"]["help_url"]
        assert help_url.startswith("https://trello.com/1/authorize?")
        assert parse_qs(urlparse(help_url).query)["key"] == ["trello-app-key"]


class TestIntegrationHub:
    def _hub(self, api, backend):
        return IntegrationHub(
            lambda user_id: KeyValueIntegrationStore(backend, user_id),
            oauth_apps=OAUTH_APPS,
            state_manager=OAuthStateManager(STATE_SECRET),
            transport=api.transport(),
        )

    @pytest.mark.asyncio
    async def test_one_service_per_user(self, api):
        hub = self._hub(api, InMemoryBackend())
        assert await hub.for_user("u1") is await hub.for_user("u1")
        assert await hub.for_user("u1") is not await hub.for_user("u2")

    @pytest.mark.asyncio
    async def test_services_share_idle_state_manager(self, api):
        hub = self._hub(api, InMemoryBackend())
        assert len(hub.state_manager) == 0

        u1 = await hub.for_user("u1")
        u2 = await hub.for_user("u2")

        assert u1.state_manager is hub.state_manager
        assert u2.state_manager is hub.state_manager
        u1.get_authorization_url(Provider.SOURCE_HOST, "u1")
        assert len(hub.state_manager) == 1

    @pytest.mark.asyncio
    async def test_callback_after_idle_start(self, api):
        _github_api(api)
        hub = self._hub(api, InMemoryBackend())
        service = await hub.for_user("u1")
        state = _state_from(service.get_authorization_url(Provider.SOURCE_HOST, "u1"))

        result = await hub.handle_oauth_callback(Provider.SOURCE_HOST, "code", state)

        assert result.success, result.error
        assert service.is_connected(Provider.SOURCE_HOST)

    @pytest.mark.asyncio
    async def test_callback_routed_to_issuing_user(self, api):
        _github_api(api)
        backend = InMemoryBackend()
        hub = self._hub(api, backend)
        u2 = await hub.for_user("u2")
        state = _state_from(u2.get_authorization_url(Provider.SOURCE_HOST, "u2"))

        result = await hub.handle_oauth_callback(Provider.SOURCE_HOST, "code", state)

        assert result.success, result.error
        assert result.config.user_id == "u2"
        assert u2.is_connected(Provider.SOURCE_HOST)
        assert not (await hub.for_user("u1")).is_connected(Provider.SOURCE_HOST)
        assert await backend.get("integrations:u2") is not None

    @pytest.mark.asyncio
    async def test_bad_state(self, api):
        hub = self._hub(api, InMemoryBackend())
        result = await hub.handle_oauth_callback(Provider.SOURCE_HOST, "code", "nope")
        assert not result.success
        assert api.calls == []
