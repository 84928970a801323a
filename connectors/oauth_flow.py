"""
OAuth flow controller — initiate a grant, wait for the redirect, exchange the code.

State machine::

    IDLE ──initiate──▶ INITIATED ──await_callback──▶ AWAITING_CALLBACK ──exchange──▶ EXCHANGED
                           │                               │
                           └───────────────┬───────────────┘
                                           ▼
                                        FAILED

The wait for the redirect is the one long, user-paced suspension in the
package.  It has no timeout unless the caller passes one, and it can always
be cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Mapping, Optional, Set, Union

from config.settings import Settings
from connectors.connections import filter_by_connector, to_connections
from connectors.errors import (
    AlloyError,
    AuthorizationDenied,
    CallbackMissingCode,
    CallbackTimeout,
    Cancelled,
    CodeAlreadyUsed,
    InitiationError,
    InvalidFlowState,
    RemoteServiceError,
)
from connectors.schemas import (
    AuthorizationGrant,
    CallbackPayload,
    Connection,
    ExchangeResult,
    FlowState,
    PendingCredential,
)
from connectors.transport import CredentialTransport

logger = logging.getLogger(__name__)


class OAuthFlowController:
    """Drives one authorization grant at a time against the Alloy credential API."""

    def __init__(self, settings: Settings, transport: CredentialTransport) -> None:
        self._settings = settings
        self._transport = transport
        self._state = FlowState.IDLE
        self._pending: Optional[PendingCredential] = None
        self._callback: Optional[asyncio.Future] = None
        self._used_codes: Set[str] = set()
        self._last_error: Optional[AlloyError] = None
        self._result: Optional[ExchangeResult] = None

    # ── Introspection ───────────────────────────────────────────────────

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def pending(self) -> Optional[PendingCredential]:
        return self._pending

    @property
    def last_error(self) -> Optional[AlloyError]:
        return self._last_error

    @property
    def result(self) -> Optional[ExchangeResult]:
        return self._result

    def _transition(self, new_state: FlowState) -> None:
        if new_state != self._state:
            logger.info("OAuth flow: %s → %s", self._state.value, new_state.value)
        self._state = new_state

    def _fail(self, error: AlloyError) -> AlloyError:
        self._last_error = error
        self._transition(FlowState.FAILED)
        return error

    # ── Initiate ────────────────────────────────────────────────────────

    async def initiate(
        self,
        connector_id: str,
        redirect_uri: Optional[str] = None,
    ) -> AuthorizationGrant:
        """
        Ask Alloy for an authorization URL.

        Raises
        ------
        InvalidFlowState – a grant is already in progress
        InitiationError  – the remote rejected the request (unknown connector,
                           missing permission, …); never retried
        """
        if self._state in (FlowState.INITIATED, FlowState.AWAITING_CALLBACK):
            raise InvalidFlowState(
                f"Cannot initiate while a grant is {self._state.value}; cancel it first"
            )
        self.reset()

        redirect = redirect_uri or self._settings.oauth_redirect_uri
        body = {
            "connectorId": connector_id,
            "authenticationType": "oauth2",
            "redirectUri": redirect,
            "userId": self._settings.user_id,
        }
        logger.info("Initiating OAuth for connector=%s redirect=%s", connector_id, redirect)

        try:
            response = await self._transport.send(
                "POST", f"/connectors/{connector_id}/credentials", body
            )
        except RemoteServiceError as exc:
            raise self._fail(
                InitiationError(
                    f"Alloy refused to start OAuth for '{connector_id}': {exc}",
                    connector_id=connector_id,
                    status_code=exc.status_code,
                    payload=exc.payload,
                )
            ) from exc
        except AlloyError as exc:
            self._fail(exc)
            raise

        data = response.data if isinstance(response.data, dict) else {}
        oauth_url = data.get("oauthUrl")
        if not oauth_url:
            raise self._fail(
                InitiationError(
                    f"Alloy response for '{connector_id}' carried no oauthUrl",
                    connector_id=connector_id,
                    status_code=response.status_code,
                    payload=response.data,
                )
            )

        credential_id = data.get("credentialId")
        self._pending = PendingCredential(
            connector_id=connector_id,
            redirect_uri=redirect,
            credential_id=credential_id,
        )
        self._callback = asyncio.get_running_loop().create_future()
        self._transition(FlowState.INITIATED)
        logger.info("OAuth URL issued (credentialId=%s)", credential_id or "N/A")
        return AuthorizationGrant(authorization_url=oauth_url, credential_id=credential_id)

    # ── Callback ────────────────────────────────────────────────────────

    def deliver_callback(self, payload: Union[CallbackPayload, Mapping[str, Any]]) -> bool:
        """
        Hand the redirect parameters to the waiting flow.

        Called by the callback receiver.  An ``error`` or a missing code fails
        the pending grant even when nobody is parked in ``await_callback``.
        A code is only handed off to a parked waiter; otherwise this returns
        False and the receiver must call ``exchange`` itself.  Late, duplicate
        or unsolicited redirects also return False.
        """
        if not isinstance(payload, CallbackPayload):
            payload = CallbackPayload(**{k: v for k, v in payload.items() if v not in (None, "")})

        if self._callback is None or self._callback.done():
            logger.warning("Ignoring OAuth callback: no grant is waiting (state=%s)", self._state.value)
            return False

        if payload.code and not payload.error and self._state != FlowState.AWAITING_CALLBACK:
            logger.info("OAuth callback arrived with nobody awaiting it; caller must exchange")
            return False

        if payload.error:
            logger.error("OAuth provider returned error=%s (%s)", payload.error, payload.error_description)
            self._fail(AuthorizationDenied(payload.error, payload.error_description))
        elif not payload.code:
            logger.error(
                "OAuth callback without a code — the grant may still have completed; "
                "check the connections list before initiating again"
            )
            self._fail(CallbackMissingCode(state=payload.state))
        else:
            logger.info("OAuth callback received with an authorization code")

        self._callback.set_result(payload)
        return True

    async def await_callback(self, timeout: Optional[float] = None) -> CallbackPayload:
        """
        Park until the callback receiver delivers the redirect.

        Raises
        ------
        CallbackMissingCode / AuthorizationDenied – the redirect was unusable
        CallbackTimeout                           – ``timeout`` elapsed first
        Cancelled                                 – ``cancel()`` was called
        """
        if self._callback is None or self._state not in (
            FlowState.INITIATED,
            FlowState.AWAITING_CALLBACK,
            FlowState.FAILED,
        ):
            raise InvalidFlowState(f"No grant to wait for (state={self._state.value})")

        if not self._callback.done():
            self._transition(FlowState.AWAITING_CALLBACK)
            try:
                await asyncio.wait_for(asyncio.shield(self._callback), timeout)
            except asyncio.TimeoutError:
                self._cancel_callback()
                raise self._fail(
                    CallbackTimeout(f"No OAuth callback within {timeout:.0f}s")
                ) from None
            except asyncio.CancelledError:
                self._cancel_callback()
                self._fail(Cancelled("Wait for OAuth callback was cancelled"))
                raise

        if self._state == FlowState.FAILED and self._last_error is not None:
            raise self._last_error
        return self._callback.result()

    def cancel(self, reason: str = "Cancelled by caller") -> bool:
        """Abort a grant that is waiting or exchanging.  Returns False if nothing was in flight."""
        if self._state not in (FlowState.INITIATED, FlowState.AWAITING_CALLBACK):
            return False
        self._fail(Cancelled(reason))
        if self._callback is not None and not self._callback.done():
            self._callback.set_result(CallbackPayload())
        return True

    def _cancel_callback(self) -> None:
        if self._callback is not None and not self._callback.done():
            self._callback.cancel()

    # ── Exchange ────────────────────────────────────────────────────────

    async def exchange(
        self,
        code: str,
        credential_id: Optional[str] = None,
        *,
        connector_id: Optional[str] = None,
    ) -> ExchangeResult:
        """
        Trade an authorization code for a connection.

        Codes are single-use remotely, so a code is recorded as used before
        the request goes out and any second attempt is refused locally.

        ``connector_id`` allows exchanging a code that arrived without a
        preceding ``initiate`` in this process (e.g. after a restart).
        """
        if code in self._used_codes:
            raise CodeAlreadyUsed(code)

        if self._pending is not None and self._state in (
            FlowState.INITIATED,
            FlowState.AWAITING_CALLBACK,
        ):
            connector = connector_id or self._pending.connector_id
            credential_id = credential_id or self._pending.credential_id
        elif self._state == FlowState.IDLE and connector_id:
            connector = connector_id
        else:
            raise InvalidFlowState(f"Cannot exchange a code in state {self._state.value}")

        self._used_codes.add(code)
        if self._callback is not None and not self._callback.done():
            self._callback.set_result(CallbackPayload(code=code))

        body = {"code": code, "userId": self._settings.user_id}
        if credential_id:
            body["credentialId"] = credential_id

        try:
            response = await self._transport.send(
                "POST", f"/connectors/{connector}/credentials/callback", body
            )
        except asyncio.CancelledError:
            self._fail(Cancelled("Code exchange was cancelled"))
            raise
        except AlloyError as exc:
            logger.error("Code exchange for %s failed: %s", connector, exc)
            self._fail(exc)
            raise

        if self._state == FlowState.FAILED and isinstance(self._last_error, Cancelled):
            raise self._last_error

        data = response.data if isinstance(response.data, dict) else {}
        connection_id = data.get("connectionId") or data.get("id")
        returned_credential = data.get("credentialId") or data.get("id") or connection_id
        if not connection_id:
            raise self._fail(
                RemoteServiceError(
                    "Code exchange response carried no connection id",
                    status_code=response.status_code,
                    payload=response.data,
                )
            )

        self._result = ExchangeResult(
            connection_id=str(connection_id),
            credential_id=str(returned_credential),
            connector_id=connector,
        )
        self._transition(FlowState.EXCHANGED)
        logger.info("OAuth complete: connection %s for %s", self._result.connection_id, connector)
        return self._result

    async def complete(self, timeout: Optional[float] = None) -> ExchangeResult:
        """
        Wait for the redirect, then exchange its code.

        If the callback route already exchanged the code before anyone
        parked here, that result is returned as is.
        """
        if self._state == FlowState.EXCHANGED and self._result is not None:
            return self._result
        payload = await self.await_callback(timeout)
        return await self.exchange(payload.code)

    # ── Reads ───────────────────────────────────────────────────────────

    async def list_connections(self, connector_id: Optional[str] = None) -> List[Connection]:
        """
        All connections Alloy holds for this API key; legal in every state.

        An empty listing is a normal answer, not an error.
        """
        response = await self._transport.send("GET", "/credentials")
        raw = response.data
        if isinstance(raw, dict):
            raw = raw.get("data") or raw.get("credentials") or []
        if not isinstance(raw, list):
            logger.warning("Unexpected /credentials payload type: %s", type(raw).__name__)
            raw = []

        connections = to_connections(raw)
        if connector_id:
            connections = filter_by_connector(connections, connector_id)
        logger.info(
            "Listed %d connection(s)%s",
            len(connections),
            f" for {connector_id}" if connector_id else "",
        )
        return connections

    # ── Housekeeping ────────────────────────────────────────────────────

    def reset(self) -> None:
        """Forget the finished grant.  Used codes stay remembered."""
        if self._state in (FlowState.INITIATED, FlowState.AWAITING_CALLBACK):
            raise InvalidFlowState("Cannot reset a grant in progress; cancel it first")
        self._cancel_callback()
        self._pending = None
        self._callback = None
        self._last_error = None
        self._result = None
        self._transition(FlowState.IDLE)
