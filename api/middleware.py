"""
Global middleware.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Request timing and access log; OAuth callback pages are never cached."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        if request.url.path.endswith("/callback"):
            response.headers["Cache-Control"] = "no-store"

        # Path only: OAuth callbacks carry the code and state in the query
        level = logging.WARNING if response.status_code >= 500 else logging.DEBUG
        logger.log(level, "%s %s → %d — %.3fs", request.method, request.url.path, response.status_code, elapsed)
        return response
