"""
Application settings loaded from environment variables.
"""

from typing import Dict, Optional

from pydantic_settings import BaseSettings

from utils.schemas import OAuthApp, Provider


class Settings(BaseSettings):
    # ── OAuth apps ──────────────────────────────────────────────────────
    github_client_id: str = ""
    github_client_secret: str = ""
    slack_client_id: str = ""
    slack_client_secret: str = ""
    figma_client_id: str = ""
    figma_client_secret: str = ""
    google_client_id: str = ""          # Gmail
    google_client_secret: str = ""
    oauth_redirect_base: str = "http://localhost:8000"  # base URL for OAuth callbacks

    # ── Card board (token request page) ─────────────────────────────────
    trello_api_key: str = ""
    trello_app_name: str = "Integrations"

    # ── Security Secrets ──────────────────────────────────────────────────
    oauth_state_secret: str = "change-me-oauth-state"   # HMAC secret for OAuth CSRF state
    oauth_state_ttl_seconds: int = 600
    token_encryption_key: str = ""                       # Fernet key for credentials at rest
    auth_token_secret: str = "change-me-auth-token"      # host-issued bearer tokens
    github_webhook_secret: str = ""
    slack_signing_secret: str = ""

    # ── Storage ──────────────────────────────────────────────────────────
    storage_backend: str = "sql"        # sql | file | memory
    database_url: str = "sqlite+aiosqlite:///./integrations.db"
    storage_path: str = "./integrations.json"

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: list = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def redirect_uri(self, provider: Provider) -> str:
        return f"{self.oauth_redirect_base}/api/v1/integrations/{provider.value}/callback"

    def oauth_apps(self) -> Dict[Provider, OAuthApp]:
        """
        Build the explicit per-provider OAuth registration table.

        Providers without a client id are left out, which the orchestrator
        reads as "OAuth unavailable for this deployment".
        """
        pairs = {
            Provider.SOURCE_HOST: (self.github_client_id, self.github_client_secret),
            Provider.CHAT: (self.slack_client_id, self.slack_client_secret),
            Provider.DESIGN_TOOL: (self.figma_client_id, self.figma_client_secret),
            Provider.MAILBOX: (self.google_client_id, self.google_client_secret),
        }
        apps = {
            provider: OAuthApp(
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=self.redirect_uri(provider),
            )
            for provider, (client_id, client_secret) in pairs.items()
            if client_id
        }
        if self.trello_api_key:
            # Token-request page only; the token is pasted back into the form
            apps[Provider.CARD_BOARD] = OAuthApp(
                client_id=self.trello_api_key,
                redirect_uri=self.oauth_redirect_base,
                app_name=self.trello_app_name,
            )
        return apps

    def webhook_secret(self, provider: Provider) -> Optional[str]:
        secret = {
            Provider.SOURCE_HOST: self.github_webhook_secret,
            Provider.CHAT: self.slack_signing_secret,
        }.get(provider)
        return secret or None


config = Settings()
