"""
AlloyIntegration — wires config, transport, OAuth flow, validator and executor.

One instance per process.  It owns the HTTP client and the connection cache,
and is the object the HTTP layer and scripts talk to.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

import httpx

from config.env_file import update_env_file
from config.settings import Settings
from connectors.cache import ConnectionCache
from connectors.errors import CallbackMissingCode, NoWorkingConnection
from connectors.executor import ActionExecutor
from connectors.notion import NotionConnector
from connectors.oauth_flow import OAuthFlowController
from connectors.retry import RetryPolicy, Sleep
from connectors.schemas import Connection, ConnectionStatus, ExchangeResult, ValidationReport
from connectors.transport import CredentialTransport
from connectors.validator import ConnectionValidator

logger = logging.getLogger(__name__)

# Receives the authorization URL: print it, open a browser, push it to a UI…
UrlHandler = Callable[[str], Union[None, Awaitable[None]]]


class AlloyIntegration:
    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.transport = CredentialTransport(settings, client=client)
        self.cache = ConnectionCache()
        self.flow = OAuthFlowController(settings, self.transport)
        self.executor = ActionExecutor(
            self.transport,
            retry_policy=RetryPolicy.from_settings(settings),
            cache=self.cache,
            sleep=sleep,
        )

    def validator(self, connector_id: str = "notion") -> ConnectionValidator:
        return ConnectionValidator(
            self.executor,
            connector_id=connector_id,
            cache=self.cache,
            lister=self.flow,
            concurrency=self.settings.batch_concurrency,
        )

    # ── Authorization ───────────────────────────────────────────────────

    async def connect(
        self,
        connector_id: str = "notion",
        *,
        on_authorization_url: Optional[UrlHandler] = None,
        redirect_uri: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExchangeResult:
        """
        Run a full grant: initiate, hand the URL to the user, wait, exchange.

        Something must deliver the redirect to ``self.flow`` (the callback
        routes or ``api.receiver.CallbackReceiver``).  If the redirect comes
        back without a code, the connections list is checked for a grant that
        completed anyway before giving up.  A freshly exchanged id is probed
        once and only selected in the cache if it answers.
        """
        grant = await self.flow.initiate(connector_id, redirect_uri)
        if on_authorization_url is not None:
            maybe = on_authorization_url(grant.authorization_url)
            if asyncio.iscoroutine(maybe):
                await maybe
        else:
            logger.info("Open this URL to authorize %s:\n  %s", connector_id, grant.authorization_url)

        wait = timeout if timeout is not None else self.settings.callback_timeout_seconds
        try:
            result = await self.flow.complete(wait)
        except CallbackMissingCode:
            logger.warning("No code in callback; looking for a connection created anyway")
            report = await self.validator(connector_id).resolve(probe_limit=self.settings.probe_limit)
            if report.recommended is None:
                raise
            rec = report.recommended
            return ExchangeResult(
                connection_id=rec.connection_id,
                credential_id=rec.connection_id,
                connector_id=connector_id,
            )

        report = await self.validator(connector_id).validate(
            [Connection(connection_id=result.connection_id, connector_id=connector_id)]
        )
        if report.recommended is None:
            logger.warning(
                "New connection %s did not answer its first read; not selecting it",
                result.connection_id,
            )
        return result

    # ── Connection selection ────────────────────────────────────────────

    async def resolve_connection(
        self,
        connector_id: str = "notion",
        *,
        persist_to: Optional[Union[str, Path]] = None,
    ) -> ValidationReport:
        """Probe the configured id, then listed ones; optionally save the winner to ``.env``."""
        report = await self.validator(connector_id).resolve(
            self.settings.connection_id,
            probe_limit=self.settings.probe_limit,
        )
        if report.recommended is not None and persist_to is not None:
            path = Path(persist_to)
            update_env_file(
                path,
                "CONNECTION_ID",
                report.recommended.connection_id,
                template=path.with_name(".env.example"),
            )
        return report

    async def ensure_connection(self, connector_id: str = "notion") -> Connection:
        """
        A connection id that is known to work.

        Served from the cache only when the cached id was last seen active;
        otherwise resolved and probed now.
        """
        cached = self.cache.get(connector_id)
        if cached and self.cache.status(cached) == ConnectionStatus.ACTIVE:
            return Connection(
                connection_id=cached,
                connector_id=connector_id,
                status=ConnectionStatus.ACTIVE,
            )
        report = await self.resolve_connection(connector_id)
        if report.recommended is None:
            raise NoWorkingConnection(connector_id, tried=len(report.results))
        return report.recommended

    async def notion(self, connection_id: Optional[str] = None) -> NotionConnector:
        if connection_id is None:
            connection_id = (await self.ensure_connection("notion")).connection_id
        return NotionConnector(
            self.executor,
            connection_id,
            notion_version=self.settings.notion_version,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def aclose(self) -> None:
        self.flow.cancel("Integration shutting down")
        await self.transport.aclose()

    async def __aenter__(self) -> "AlloyIntegration":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
