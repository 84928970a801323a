"""
Error taxonomy for the Alloy connectivity layer.

Every failure surfaced by the transport, the OAuth flow, the validator or the
executor is one of these types, so callers can branch on the kind of failure
instead of parsing messages.
"""

from __future__ import annotations

from typing import Any, List, Optional


class AlloyError(Exception):
    """Base class for every error raised by this package."""


# ── Configuration ───────────────────────────────────────────────────────


class ConfigurationError(AlloyError):
    """Required configuration is missing or invalid.  Fatal at startup."""

    def __init__(self, message: str, fields: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.fields = fields or []


# ── Transport ───────────────────────────────────────────────────────────


class NetworkError(AlloyError):
    """The request never produced an HTTP response (DNS, refused, timeout)."""


class MalformedResponseError(AlloyError):
    """A 2xx response whose body is not valid JSON."""

    def __init__(self, message: str, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteServiceError(AlloyError):
    """Non-2xx response.  Keeps the remote diagnostic payload intact."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        payload: Any = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload
        self.retry_after = retry_after

    @property
    def remote_code(self) -> Optional[str]:
        """Machine-readable error code from the payload, if the remote sent one."""
        err = _error_section(self.payload)
        code = err.get("code") if isinstance(err, dict) else None
        return str(code) if code is not None else None

    @property
    def remote_message(self) -> Optional[str]:
        err = _error_section(self.payload)
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(self.payload, str) and self.payload:
            return self.payload
        return None


class TransientServiceError(RemoteServiceError):
    """HTTP 429 or 5xx.  Eligible for retry under the executor's policy."""


class RetriesExhausted(TransientServiceError):
    """A retry sequence ended on a transient error."""

    def __init__(self, last_error: TransientServiceError, attempts: int) -> None:
        super().__init__(
            f"{last_error} (gave up after {attempts} attempts)",
            status_code=last_error.status_code,
            payload=last_error.payload,
            retry_after=last_error.retry_after,
        )
        self.last_error = last_error
        self.attempts = attempts


class PermanentClientError(RemoteServiceError):
    """HTTP 4xx other than 429.  Never retried."""


class CredentialNotFound(PermanentClientError):
    """The remote does not recognise the connection id used for an action."""


# ── OAuth flow ──────────────────────────────────────────────────────────


class InitiationError(AlloyError):
    """The remote refused to start an authorization grant."""

    def __init__(
        self,
        message: str,
        *,
        connector_id: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.connector_id = connector_id
        self.status_code = status_code
        self.payload = payload


class CallbackMissingCode(AlloyError):
    """
    The redirect arrived without an authorization code.

    The grant may still have completed remotely; list connections before
    initiating a new grant.
    """

    def __init__(self, message: str = "OAuth callback carried no authorization code", state: Optional[str] = None) -> None:
        super().__init__(message)
        self.state = state


class AuthorizationDenied(AlloyError):
    """The third party redirected back with an ``error`` parameter."""

    def __init__(self, error: str, description: Optional[str] = None) -> None:
        msg = f"Authorization failed: {error}"
        if description:
            msg += f" ({description})"
        super().__init__(msg)
        self.error = error
        self.description = description


class CallbackTimeout(AlloyError):
    """No callback arrived within the caller-supplied timeout."""


class Cancelled(AlloyError):
    """The caller aborted the flow while it was waiting or exchanging."""


class CodeAlreadyUsed(AlloyError):
    """An authorization code was presented for exchange a second time."""

    def __init__(self, code: str) -> None:
        super().__init__("Authorization code has already been exchanged")
        self.code_hint = code[:6] + "…" if len(code) > 6 else code


class InvalidFlowState(AlloyError):
    """An OAuth operation was called in a state that does not allow it."""


# ── Execution ───────────────────────────────────────────────────────────


class InactiveConnection(AlloyError):
    """The connection is known to be broken and must not be used."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} is marked inactive")
        self.connection_id = connection_id


class NoWorkingConnection(AlloyError):
    """Every candidate connection failed its probe (or there were none)."""

    def __init__(self, connector_id: str, tried: int) -> None:
        super().__init__(
            f"No working {connector_id} connection among {tried} candidate(s); "
            "authorize again or check the Alloy dashboard"
        )
        self.connector_id = connector_id
        self.tried = tried


def _error_section(payload: Any) -> Any:
    """Alloy wraps details as ``{"error": {...}}`` but not always."""
    if isinstance(payload, dict):
        inner = payload.get("error")
        if isinstance(inner, dict):
            return inner
        return payload
    return None
