"""
Integration Orchestration Service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import Settings, config
from connectors.encryption import TokenCipher
from connectors.oauth_state import OAuthStateManager
from connectors.routes import router as integrations_router
from connectors.service import IntegrationHub, StoreFactory
from connectors.store import InMemoryBackend, JsonFileBackend, KeyValueIntegrationStore
from database.session import build_engine, build_session_factory, init_models
from database.store import SqlIntegrationStore

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    for _noisy in ("httpcore", "httpx", "botocore", "boto3", "urllib3", "aiosqlite"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def build_store_factory(settings: Settings, app: FastAPI) -> StoreFactory:
    """Pick the persistence backend named by ``STORAGE_BACKEND``."""
    cipher = TokenCipher(settings.token_encryption_key)
    backend = settings.storage_backend.lower()

    if backend == "sql":
        engine = build_engine(settings.database_url, echo=settings.debug)
        session_factory = build_session_factory(engine)
        app.state.engine = engine
        return lambda user_id: SqlIntegrationStore(session_factory, user_id, cipher)

    if backend == "file":
        kv = JsonFileBackend(settings.storage_path)
    elif backend == "memory":
        kv = InMemoryBackend()
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND '{settings.storage_backend}' (expected sql, file or memory)")
    return lambda user_id: KeyValueIntegrationStore(kv, user_id, cipher)


def create_app(settings: Optional[Settings] = None, hub: Optional[IntegrationHub] = None) -> FastAPI:
    settings = settings or config
    app = FastAPI(
        title="Integration Orchestration Service",
        version="1.0.0",
        description="Connect, authenticate and sync third-party integrations.",
    )
    app.state.settings = settings
    app.state.engine = None

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    if hub is None:
        hub = IntegrationHub(
            build_store_factory(settings, app),
            oauth_apps=settings.oauth_apps(),
            state_manager=OAuthStateManager(settings.oauth_state_secret, settings.oauth_state_ttl_seconds),
        )
    app.state.hub = hub

    # Routes
    app.include_router(integrations_router, prefix="/api/v1/integrations")

    @app.on_event("startup")
    async def on_startup():
        if app.state.engine is not None:
            logger.info("Creating integration tables…")
            await init_models(app.state.engine)

        configured = sorted(p.value for p in settings.oauth_apps())
        logger.info("Provider apps configured: %s", ", ".join(configured) or "none")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.engine is not None:
            await app.state.engine.dispose()

    return app


if __name__ == "__main__":
    configure_logging(config.debug)
    uvicorn.run(
        create_app(),
        host=config.host,
        port=config.port,
        log_level="debug" if config.debug else "info",
    )
