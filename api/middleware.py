"""
Global middleware.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Time every request; the OAuth callback path is logged at INFO."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        level = logging.INFO if request.url.path.endswith("/oauth/callback") else logging.DEBUG
        logger.log(level, "%s %s -> %d (%.3fs)", request.method, request.url.path, response.status_code, elapsed)
        return response
