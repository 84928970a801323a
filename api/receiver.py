"""
CallbackReceiver — a short-lived local HTTP listener for the OAuth redirect.

Used by scripts that run ``AlloyIntegration.connect()`` without the full API
server.  Serves only the callback routes and stops once the grant is done.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from api.callback import router as callback_router
from connectors.oauth_flow import OAuthFlowController

logger = logging.getLogger(__name__)


def build_callback_app(flow: OAuthFlowController) -> FastAPI:
    app = FastAPI(title="OAuth callback receiver", docs_url=None, redoc_url=None)
    app.state.flow = flow
    app.include_router(callback_router)
    return app


class CallbackReceiver:
    def __init__(
        self,
        flow: OAuthFlowController,
        *,
        host: str = "127.0.0.1",
        port: int = 3000,
    ) -> None:
        self.host = host
        self.port = port
        self.app = build_callback_app(flow)
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._task.done():
                # serve() ended before binding (port in use etc.)
                self._task.result()
                raise RuntimeError(f"Callback receiver could not bind {self.host}:{self.port}")
            await asyncio.sleep(0.05)
        logger.info("Listening for OAuth callback on http://%s:%d/oauth/callback", self.host, self.port)

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._server = None
            self._task = None
        logger.info("Callback receiver stopped")

    async def __aenter__(self) -> "CallbackReceiver":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
