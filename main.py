"""
Notion via Alloy — application entry point.

    python main.py            run the API server (callback routes included)
    python main.py connect    authorize Notion once from the terminal
    python main.py verify     find a working connection and save it to .env
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.callback import router as callback_router
from api.middleware import register_middleware
from api.receiver import CallbackReceiver
from api.routes import router as api_router
from config.settings import Settings, load_settings
from connectors.errors import AlloyError, ConfigurationError
from core.integration import AlloyIntegration

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    for _noisy in ("httpcore", "httpx", "urllib3"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    *,
    integration: Optional[AlloyIntegration] = None,
) -> FastAPI:
    if integration is None:
        settings = settings or load_settings()
        integration = AlloyIntegration(settings)
    settings = integration.settings
    configure_logging(settings.debug)

    app = FastAPI(
        title="Notion via Alloy",
        version="1.0.0",
        description="OAuth credential lifecycle and action execution for Notion through Alloy.",
    )
    app.state.integration = integration
    app.state.flow = integration.flow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_middleware(app)

    app.include_router(api_router, prefix="/api")
    app.include_router(callback_router)

    @app.on_event("startup")
    async def on_startup():
        logger.info(
            "Alloy base=%s user=%s key=%s",
            settings.base_url,
            settings.user_id,
            settings.masked_api_key(),
        )
        if not settings.connection_id:
            logger.info("No CONNECTION_ID configured; authorize via POST /api/oauth/initiate")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await integration.aclose()

    return app


# ── Terminal commands ──────────────────────────────────────────────────


async def _connect(settings: Settings) -> int:
    async with AlloyIntegration(settings) as integration:
        async with CallbackReceiver(
            integration.flow,
            host=settings.callback_host,
            port=settings.callback_port,
        ):
            result = await integration.connect(
                "notion",
                on_authorization_url=lambda url: print(f"\nOpen this URL in your browser:\n\n  {url}\n"),
            )
        print(f"Connected. Add to your .env:\n\n  CONNECTION_ID={result.connection_id}\n")
    return 0


async def _verify(settings: Settings, env_path: str) -> int:
    async with AlloyIntegration(settings) as integration:
        report = await integration.resolve_connection("notion", persist_to=env_path)
    for r in report.results:
        mark = "ok " if r.working else "bad"
        print(f"  [{mark}] {r.connection.connection_id}  {r.error_message or ''}")
    if report.recommended is None:
        print("\nNo working Notion connection. Run `python main.py connect`.")
        return 1
    print(f"\nUsing {report.recommended.connection_id} (saved to {env_path})")
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Notion via Alloy")
    parser.add_argument("command", nargs="?", default="serve", choices=["serve", "connect", "verify"])
    parser.add_argument("--env-file", default=".env")
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.debug)

    if args.command == "serve":
        uvicorn.run(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level="debug" if settings.debug else "info",
        )
        return 0

    try:
        if args.command == "connect":
            return asyncio.run(_connect(settings))
        return asyncio.run(_verify(settings, args.env_file))
    except AlloyError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
