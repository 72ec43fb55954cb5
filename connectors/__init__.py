"""
connectors — integration orchestration for third-party services.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation with signed single-use state
  • Callback handling (code → token exchange) and token refresh
  • API-key / cloud credential validation with a live probe
  • Per-user config storage, Fernet-encrypted at rest
  • Cached clients and concurrent sync fan-out

Each provider (GitHub, Slack, Trello, AWS, …) is a subclass of BaseConnector.
"""
