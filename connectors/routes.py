"""
Integration API routes — providers, OAuth connect/callback, credential
connect, settings, disconnect, sync and inbound webhooks.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import json
import logging
import uuid
from html import escape
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse

from api.dependencies import get_current_user_id, get_hub, get_integration_service
from connectors.service import IntegrationHub, IntegrationService
from connectors.webhooks import verify_webhook
from utils.schemas import Provider, WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


# ── Catalogue & connections ────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    service: IntegrationService = Depends(get_integration_service),
) -> List[Dict[str, Any]]:
    """All providers with auth scheme, credential form and this user's status."""
    return service.list_providers()


@router.get("/connections")
async def list_connections(
    service: IntegrationService = Depends(get_integration_service),
) -> List[Dict[str, Any]]:
    """Stored integrations for the authenticated user, credentials stripped."""
    return [c.public_view() for c in service.get_all_configs()]


# ── Webhooks (declared before /{provider}/... so the literal wins) ─────


@router.post("/webhooks/{provider}")
async def receive_webhook(
    provider: Provider,
    request: Request,
) -> Dict[str, Any]:
    """Verify and acknowledge a provider webhook."""
    settings = request.app.state.settings
    body = await request.body()
    if not verify_webhook(provider, settings.webhook_secret(provider), request.headers, body):
        logger.warning("Webhook rejected: provider=%s bad signature", provider.value)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(body) if body else {}
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body is not JSON")
    if not isinstance(payload, dict):
        payload = {"data": payload}

    # Slack endpoint verification handshake
    if provider == Provider.CHAT and payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    event = WebhookEvent(
        id=request.headers.get("x-github-delivery") or payload.get("event_id") or str(uuid.uuid4()),
        provider=provider,
        event=request.headers.get("x-github-event") or (payload.get("event") or {}).get("type") or payload.get("type", "unknown"),
        payload=payload,
    )
    logger.info("Webhook received: provider=%s event=%s id=%s", provider.value, event.event, event.id)
    return {"received": True, "event": event.event, "id": event.id}


# ── OAuth ──────────────────────────────────────────────────────────────


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: Provider,
    redirect_url: str = Query(""),
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should open this URL in a popup window.
    """
    auth_url = service.get_authorization_url(provider, user_id, redirect_url)
    if auth_url is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"OAuth is not available for provider '{provider.value}'",
        )
    return {"auth_url": auth_url, "provider": provider.value}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: Provider,
    code: Optional[str] = Query(None),
    state: str = Query(...),
    error: Optional[str] = Query(None),
    hub: IntegrationHub = Depends(get_hub),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Exchanges the code, stores the connection, and returns a small HTML
    page that notifies the opener window and auto-closes.
    """
    if error or not code:
        # User denied consent; still burn the state
        hub.state_manager.consume(state)
        message = f"Authorization denied: {error or 'no code returned'}"
        return HTMLResponse(content=_callback_html(False, message, provider.value), status_code=200)

    result = await hub.handle_oauth_callback(provider, code, state)
    if not result.success:
        return HTMLResponse(
            content=_callback_html(False, f"Connection failed: {result.error}", provider.value),
            status_code=200,
        )

    meta = result.config.metadata
    account_label = meta.account_name or meta.account_email or meta.workspace_name or provider.value
    return HTMLResponse(
        content=_callback_html(True, f"Connected as {account_label}", provider.value),
        status_code=200,
    )


# ── Credential connect / settings / disconnect ─────────────────────────


@router.post("/{provider}/credentials")
async def connect_credentials(
    provider: Provider,
    fields: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
):
    """Connect an API-key or cloud provider from raw form fields."""
    result = await service.connect_with_credentials(provider, fields, user_id)
    if not result.success:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.public_view())
    return result.public_view()


@router.patch("/{provider}/settings")
async def update_settings(
    provider: Provider,
    settings: Dict[str, Any] = Body(...),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    result = await service.update_settings(provider, settings)
    if result.config is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Provider '{provider.value}' is not connected")
    if not result.success:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=result.public_view())
    return result.config.public_view()


@router.delete("/{provider}")
async def disconnect(
    provider: Provider,
    service: IntegrationService = Depends(get_integration_service),
):
    """Forget the integration (tokens are not revoked at the provider)."""
    result = await service.disconnect(provider)
    if not result.success:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=result.public_view())
    return {"status": "disconnected", "provider": provider.value}


# ── Sync ───────────────────────────────────────────────────────────────


@router.post("/sync")
async def sync_all(
    service: IntegrationService = Depends(get_integration_service),
) -> List[Dict[str, Any]]:
    results = await service.sync_all()
    return [r.model_dump(mode="json", by_alias=True) for r in results]


@router.post("/{provider}/sync")
async def sync_provider(
    provider: Provider,
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, Any]:
    result = await service.sync(provider)
    return result.model_dump(mode="json", by_alias=True)


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    payload = json.dumps(
        {"type": "oauth-callback", "provider": provider, "success": success, "message": message}
    ).replace("<", "\\u003c")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Integrations — {escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 400px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
        .close-note {{ color: #636a80; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{escape(message)}</p>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        // Notify the opener window
        if (window.opener) {{
            window.opener.postMessage({payload}, '*');
        }}
        // Auto-close after 2 seconds
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
