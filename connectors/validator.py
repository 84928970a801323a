"""
Connection validator — decide which connections actually work.

Being listed by Alloy does not mean a connection can execute actions (the
remote has answered "Credential not found" for listed ids), so every
candidate is probed with one cheap read before it is trusted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from connectors.cache import ConnectionCache
from connectors.connections import format_connection, sort_by_recency
from connectors.errors import AlloyError, RemoteServiceError
from connectors.executor import ActionExecutor
from connectors.oauth_flow import OAuthFlowController
from connectors.registry import ConnectorRegistry
from connectors.retry import RetryPolicy
from connectors.schemas import (
    Connection,
    ConnectionStatus,
    ProbeResult,
    ValidationReport,
)

logger = logging.getLogger(__name__)


def default_probe(connector_id: str) -> Tuple[str, Dict[str, Any]]:
    """The connector's declared side-effect-free read, or a bare search."""
    connector = ConnectorRegistry().get(connector_id)
    if connector is None:
        return "post-search", {}
    return connector.probe_action, dict(connector.probe_body)


class ConnectionValidator:
    """
    Probes candidates and ranks the working ones.

    This is the only component that promotes a connection to ``active``.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        *,
        connector_id: str = "notion",
        cache: Optional[ConnectionCache] = None,
        lister: Optional[OAuthFlowController] = None,
        concurrency: int = 3,
        probe_action: Optional[str] = None,
        probe_body: Optional[Dict[str, Any]] = None,
    ) -> None:
        default_action, default_body = default_probe(connector_id)
        self._executor = executor
        self._connector_id = connector_id
        self._cache = cache
        self._lister = lister
        self._concurrency = max(1, concurrency)
        self._probe_action = probe_action or default_action
        self._probe_body = probe_body if probe_body is not None else default_body

    async def probe(self, candidate: Connection) -> ProbeResult:
        """Issue the probe once, without retries.  Never raises."""
        connector = (
            candidate.connector_id
            if candidate.connector_id not in ("", "unknown")
            else self._connector_id
        )
        try:
            result = await self._executor.execute(
                connector,
                self._probe_action,
                candidate.connection_id,
                dict(self._probe_body),
                retryable=False,
                retry_policy=RetryPolicy.disabled(),
                allow_inactive=True,
            )
        except RemoteServiceError as exc:
            logger.info(
                "Connection %s is broken: HTTP %d %s",
                candidate.connection_id,
                exc.status_code,
                exc.remote_message or exc,
            )
            return ProbeResult(
                connection=candidate.model_copy(update={"status": ConnectionStatus.INACTIVE}),
                working=False,
                status_code=exc.status_code,
                error_code=exc.remote_code or type(exc).__name__,
                error_message=exc.remote_message or str(exc),
            )
        except Exception as exc:  # one bad candidate must not stop the rest
            logger.info("Connection %s probe failed: %s", candidate.connection_id, exc)
            return ProbeResult(
                connection=candidate.model_copy(update={"status": ConnectionStatus.INACTIVE}),
                working=False,
                error_code=type(exc).__name__,
                error_message=str(exc),
            )

        results = result.data.get("results") if isinstance(result.data, dict) else None
        logger.info("Connection %s works", candidate.connection_id)
        return ProbeResult(
            connection=candidate.model_copy(update={"status": ConnectionStatus.ACTIVE}),
            working=True,
            status_code=200,
            page_count=len(results) if isinstance(results, list) else None,
        )

    async def validate(self, candidates: Sequence[Connection]) -> ValidationReport:
        """
        Probe every candidate and classify it as working or broken.

        Never raises; an empty candidate list yields an empty report.
        """
        if not candidates:
            return ValidationReport()

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(candidate: Connection) -> ProbeResult:
            async with semaphore:
                return await self.probe(candidate)

        results: List[ProbeResult] = list(
            await asyncio.gather(*[_bounded(c) for c in candidates])
        )

        for r in results:
            if self._cache is not None:
                self._cache.record_status(r.connection.connection_id, r.connection.status)

        working = sort_by_recency(r.connection for r in results if r.working)
        broken = [r.connection for r in results if not r.working]
        recommended = working[0] if working else None

        if recommended is not None:
            if self._cache is not None:
                self._cache.set(self._connector_id, recommended.connection_id)
            logger.info("Recommended connection:\n%s", format_connection(recommended))
        logger.info(
            "Validated %d candidate(s): %d working, %d broken",
            len(results),
            len(working),
            len(broken),
        )
        return ValidationReport(
            working=working,
            broken=broken,
            recommended=recommended,
            results=results,
        )

    async def resolve(
        self,
        configured_id: Optional[str] = None,
        *,
        probe_limit: int = 10,
    ) -> ValidationReport:
        """
        Find a usable connection, repairing a stale configured one.

        The configured id is tried first.  If it does not work, the
        connector's listed connections are probed newest-first (at most
        ``probe_limit`` of them).
        """
        configured_report: Optional[ValidationReport] = None
        if configured_id:
            logger.info("Checking configured connection %s", configured_id)
            configured_report = await self.validate(
                [Connection(connection_id=configured_id, connector_id=self._connector_id)]
            )
            if configured_report.recommended is not None:
                return configured_report

        if self._lister is None:
            return configured_report or ValidationReport()

        try:
            listed = await self._lister.list_connections(self._connector_id)
        except AlloyError as exc:
            logger.error("Could not list connections: %s", exc)
            return configured_report or ValidationReport()

        candidates = [
            c for c in sort_by_recency(listed) if c.connection_id != configured_id
        ][: max(0, probe_limit)]
        if not candidates:
            logger.warning("No %s connections to probe", self._connector_id)

        report = await self.validate(candidates)
        if configured_report is not None:
            report.broken = configured_report.broken + report.broken
            report.results = configured_report.results + report.results
        return report
