"""
Shared test helpers: a fake provider HTTP API and service builders.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from connectors.oauth_state import OAuthStateManager
from connectors.service import IntegrationService
from connectors.store import InMemoryBackend, KeyValueIntegrationStore
from utils.schemas import OAuthApp, Provider

STATE_SECRET = "test-state-secret"

OAUTH_APPS = {
    provider: OAuthApp(
        client_id=f"{provider.value}-client",
        client_secret=f"{provider.value}-secret",
        redirect_uri=f"http://localhost:8000/api/v1/integrations/{provider.value}/callback",
    )
    for provider in (Provider.SOURCE_HOST, Provider.CHAT, Provider.DESIGN_TOOL, Provider.MAILBOX)
}

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeProviderAPI:
    """Routes ``httpx`` requests by method + host + path; records every call."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Responder] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, url: str, json: Any = None, status: int = 200, responder: Optional[Responder] = None):
        u = httpx.URL(url)
        self.routes[(method.upper(), f"{u.host}{u.path}")] = responder or httpx.Response(status, json=json)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get((request.method, f"{request.url.host}{request.url.path}"))
        if route is None:
            return httpx.Response(404, json={"message": f"no route for {request.url}"})
        if callable(route):
            return route(request)
        return route

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def paths(self) -> List[str]:
        return [f"{r.method} {r.url.host}{r.url.path}" for r in self.calls]


def make_service(
    api: Optional[FakeProviderAPI] = None,
    store=None,
    oauth_apps=None,
    state_manager: Optional[OAuthStateManager] = None,
) -> IntegrationService:
    return IntegrationService(
        store or KeyValueIntegrationStore(InMemoryBackend(), "u1"),
        oauth_apps=OAUTH_APPS if oauth_apps is None else oauth_apps,
        state_manager=state_manager if state_manager is not None else OAuthStateManager(STATE_SECRET),
        transport=api.transport() if api else None,
    )


@pytest.fixture
def api() -> FakeProviderAPI:
    return FakeProviderAPI()
