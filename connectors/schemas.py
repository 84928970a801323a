"""
Pydantic models for the OAuth lifecycle, connections and action calls.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth grant
# ═══════════════════════════════════════════════════════════════════════════════


class FlowState(str, Enum):
    """Lifecycle of one authorization grant."""

    IDLE = "idle"
    INITIATED = "initiated"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGED = "exchanged"
    FAILED = "failed"


class PendingCredential(BaseModel):
    """An authorization grant in progress; consumed by a single exchange."""

    connector_id: str
    redirect_uri: str
    credential_id: Optional[str] = None


class AuthorizationGrant(BaseModel):
    """What ``initiate`` hands back: where to send the user."""

    authorization_url: str
    credential_id: Optional[str] = None


class CallbackPayload(BaseModel):
    """Parameters captured from the OAuth redirect (query string or fragment)."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class ExchangeResult(BaseModel):
    connection_id: str
    credential_id: str
    connector_id: str


# ═══════════════════════════════════════════════════════════════════════════════
# Connections
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


class Connection(BaseModel):
    """
    Local reference to a remote connection.

    The intermediary owns the connection; ``status`` is only the last thing
    this process learned about it.
    """

    model_config = ConfigDict(frozen=True)

    connection_id: str
    connector_id: str = "unknown"
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    created_at: Optional[datetime] = None
    name: Optional[str] = None
    type: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # naive timestamps are UTC; keeps them comparable when sorting
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ProbeResult(BaseModel):
    """Outcome of probing one candidate."""

    connection: Connection
    working: bool
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    page_count: Optional[int] = None


class ValidationReport(BaseModel):
    working: List[Connection] = Field(default_factory=list)
    broken: List[Connection] = Field(default_factory=list)
    recommended: Optional[Connection] = None
    results: List[ProbeResult] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Actions
# ═══════════════════════════════════════════════════════════════════════════════


class ActionParameters(BaseModel):
    """Everything the execute endpoint forwards to the downstream API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    request_body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    path_params: Dict[str, str] = Field(default_factory=dict)
    query_parameters: Dict[str, Any] = Field(default_factory=dict)


class ActionRequest(BaseModel):
    """One ``execute`` call; used by batch execution."""

    connector_id: str
    action_id: str
    connection_id: str
    parameters: ActionParameters = Field(default_factory=ActionParameters)
    retryable: Optional[bool] = None
    idempotency_key: Optional[str] = None


class ActionResult(BaseModel):
    data: Any = None
    attempts: int = 1

    @property
    def retries(self) -> int:
        return self.attempts - 1
