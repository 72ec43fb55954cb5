"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.auth import verify_token
from connectors.service import IntegrationHub, IntegrationService

_bearer_scheme = HTTPBearer()


def get_hub(request: Request) -> IntegrationHub:
    return request.app.state.hub


async def get_current_user_id(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    ``user_id``.
    """
    return verify_token(credentials.credentials, request.app.state.settings.auth_token_secret)


async def get_integration_service(
    user_id: str = Depends(get_current_user_id),
    hub: IntegrationHub = Depends(get_hub),
) -> IntegrationService:
    """The calling user's orchestrator, loaded on first use."""
    return await hub.for_user(user_id)
