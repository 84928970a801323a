"""
Action executor — run a named connector action through Alloy.

Every action goes to ``POST /connectors/{connector}/actions/{action}/execute``
and is wrapped by a single ``RetryPolicy``.  Mutating actions are not
retried unless the caller supplies an idempotency key.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from connectors.cache import ConnectionCache
from connectors.errors import InactiveConnection
from connectors.retry import RetryPolicy, Sleep
from connectors.schemas import ActionParameters, ActionRequest, ActionResult
from connectors.transport import CredentialTransport

logger = logging.getLogger(__name__)

# Actions without side effects.  Safe to repeat, so retried by default.
READ_ONLY_ACTIONS = frozenset(
    {
        "post-search",
        "retrieve-a-page",
        "retrieve-a-database",
        "post-database-query",
        "retrieve-a-block",
        "get-block-children",
        "retrieve-a-page-property",
        "get-users",
        "get-user",
        "get-self",
    }
)

Parameters = Union[ActionParameters, Mapping[str, Any], None]


def build_execute_body(connection_id: str, parameters: ActionParameters) -> Dict[str, Any]:
    """Request body for the execute endpoint; optional keys only when non-empty."""
    body: Dict[str, Any] = {"credentialId": connection_id}
    if parameters.request_body is not None:
        body["requestBody"] = parameters.request_body
    if parameters.headers:
        body["headers"] = dict(parameters.headers)
    if parameters.path_params:
        body["pathParams"] = dict(parameters.path_params)
    if parameters.query_parameters:
        body["queryParameters"] = dict(parameters.query_parameters)
    return body


def _coerce_parameters(parameters: Parameters) -> ActionParameters:
    if parameters is None:
        return ActionParameters()
    if isinstance(parameters, ActionParameters):
        return parameters
    # A plain mapping is the downstream request body.
    return ActionParameters(request_body=dict(parameters))


def _expand_action_path(action_id: str, path_params: Mapping[str, str]) -> str:
    for key, value in path_params.items():
        action_id = action_id.replace(f"{{{key}}}", value)
    return action_id


class ActionExecutor:
    """Issues connector actions with one uniform retry policy."""

    def __init__(
        self,
        transport: CredentialTransport,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[ConnectionCache] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._retry_policy = retry_policy or RetryPolicy()
        self._cache = cache
        self._sleep = sleep

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def is_retry_eligible(
        self,
        action_id: str,
        retryable: Optional[bool],
        idempotency_key: Optional[str],
    ) -> bool:
        if idempotency_key:
            return retryable is not False
        if retryable is None:
            return action_id in READ_ONLY_ACTIONS
        if retryable and action_id not in READ_ONLY_ACTIONS:
            logger.warning(
                "Action %s looks mutating and has no idempotency key — not retrying", action_id
            )
            return False
        return retryable

    async def execute(
        self,
        connector_id: str,
        action_id: str,
        connection_id: str,
        parameters: Parameters = None,
        *,
        retryable: Optional[bool] = None,
        idempotency_key: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        allow_inactive: bool = False,
    ) -> ActionResult:
        """
        Execute one action and return the downstream JSON.

        Raises
        ------
        InactiveConnection   – the connection is cached as broken (unless
                               ``allow_inactive``, used when re-probing)
        RetriesExhausted     – still 429/5xx after the last allowed attempt
        CredentialNotFound   – Alloy does not know ``connection_id``
        PermanentClientError – any other 4xx; raised without delay
        """
        if not allow_inactive and self._cache is not None and self._cache.is_inactive(connection_id):
            raise InactiveConnection(connection_id)

        params = _coerce_parameters(parameters)
        action_path = _expand_action_path(action_id, params.path_params)
        path = f"/connectors/{connector_id}/actions/{action_path}/execute"
        body = build_execute_body(connection_id, params)
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        if self.is_retry_eligible(action_id, retryable, idempotency_key):
            policy = retry_policy or self._retry_policy
        else:
            policy = RetryPolicy.disabled()

        async def _attempt() -> Any:
            response = await self._transport.send("POST", path, body, headers=headers)
            return response.data

        outcome = await policy.run(
            _attempt,
            label=f"{connector_id}/{action_id}",
            sleep=self._sleep,
        )
        data = outcome.result
        if isinstance(data, dict) and "data" in data:
            data = data["data"]

        if outcome.retries:
            logger.info("%s/%s succeeded after %d retries", connector_id, action_id, outcome.retries)
        return ActionResult(data=data, attempts=outcome.attempts)

    async def execute_request(self, request: ActionRequest) -> ActionResult:
        return await self.execute(
            request.connector_id,
            request.action_id,
            request.connection_id,
            request.parameters,
            retryable=request.retryable,
            idempotency_key=request.idempotency_key,
        )

    async def execute_many(
        self,
        requests: Sequence[ActionRequest],
        *,
        concurrency: int = 3,
    ) -> List[Union[ActionResult, BaseException]]:
        """
        Run a batch with at most ``concurrency`` calls in flight.

        Results come back in input order; a failed item holds its exception
        instead of aborting the batch.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _bounded(request: ActionRequest) -> ActionResult:
            async with semaphore:
                return await self.execute_request(request)

        results = await asyncio.gather(
            *[_bounded(r) for r in requests],
            return_exceptions=True,
        )
        failed = sum(1 for r in results if isinstance(r, BaseException))
        if failed:
            logger.warning("Batch finished: %d/%d failed", failed, len(results))
        return list(results)
