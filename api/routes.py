"""
REST API routes — configuration check, OAuth initiation, connections, actions.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from api.dependencies import get_integration
from connectors.connections import sort_by_recency
from connectors.errors import (
    AlloyError,
    Cancelled,
    InactiveConnection,
    InitiationError,
    InvalidFlowState,
    NetworkError,
    NoWorkingConnection,
    PermanentClientError,
    RemoteServiceError,
)
from connectors.registry import ConnectorRegistry
from connectors.schemas import ActionParameters, Connection, FlowState
from core.integration import AlloyIntegration

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request bodies ─────────────────────────────────────────────────────


class InitiateRequest(BaseModel):
    connector_id: str = Field(default="notion", alias="connectorId")
    redirect_uri: Optional[str] = Field(default=None, alias="redirectUri")

    model_config = {"populate_by_name": True}


class ValidateRequest(BaseModel):
    connector_id: str = Field(default="notion", alias="connectorId")
    connection_ids: Optional[List[str]] = Field(default=None, alias="connectionIds")

    model_config = {"populate_by_name": True}


class ExecuteRequest(BaseModel):
    connection_id: Optional[str] = Field(default=None, alias="connectionId")
    parameters: ActionParameters = Field(default_factory=ActionParameters)
    retryable: Optional[bool] = None
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    model_config = {"populate_by_name": True}


def _http_error(exc: AlloyError) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes for API callers."""
    if isinstance(exc, InitiationError):
        code = exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
        return HTTPException(code, detail={"message": str(exc), "remote": exc.payload})
    if isinstance(exc, NoWorkingConnection):
        return HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidFlowState, InactiveConnection)):
        return HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PermanentClientError):
        return HTTPException(exc.status_code, detail={"message": str(exc), "remote": exc.payload})
    if isinstance(exc, RemoteServiceError):
        return HTTPException(status.HTTP_502_BAD_GATEWAY, detail={"message": str(exc), "remote": exc.payload})
    if isinstance(exc, NetworkError):
        return HTTPException(status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc))
    if isinstance(exc, Cancelled):
        return HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _connection_json(c: Connection) -> Dict[str, Any]:
    return {
        "connectionId": c.connection_id,
        "connectorId": c.connector_id,
        "status": c.status.value,
        "createdAt": c.created_at.isoformat() if c.created_at else None,
        "name": c.name,
    }


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/config/check")
async def config_check(integration: AlloyIntegration = Depends(get_integration)) -> Dict[str, Any]:
    """Show what was loaded, with the API key masked."""
    s = integration.settings
    return {
        "apiKey": s.masked_api_key(),
        "userId": s.user_id,
        "baseUrl": s.base_url,
        "apiVersion": s.api_version,
        "connectionId": s.connection_id,
        "redirectUri": s.oauth_redirect_uri,
    }


@router.get("/connectors")
async def list_connectors() -> List[Dict[str, str]]:
    return ConnectorRegistry().list_providers()


@router.post("/oauth/initiate")
async def initiate_oauth(
    body: InitiateRequest,
    integration: AlloyIntegration = Depends(get_integration),
) -> Dict[str, Any]:
    """Start a grant; the browser should be sent to ``oauthUrl``."""
    flow = integration.flow
    if flow.state in (FlowState.EXCHANGED, FlowState.FAILED):
        flow.reset()
    try:
        grant = await flow.initiate(body.connector_id, body.redirect_uri)
    except AlloyError as exc:
        raise _http_error(exc)
    return {
        "success": True,
        "oauthUrl": grant.authorization_url,
        "credentialId": grant.credential_id,
    }


@router.get("/oauth/status")
async def oauth_status(integration: AlloyIntegration = Depends(get_integration)) -> Dict[str, Any]:
    flow = integration.flow
    result = flow.result
    return {
        "state": flow.state.value,
        "connectorId": flow.pending.connector_id if flow.pending else None,
        "error": str(flow.last_error) if flow.last_error else None,
        "connectionId": result.connection_id if result else None,
    }


@router.post("/oauth/cancel")
async def cancel_oauth(integration: AlloyIntegration = Depends(get_integration)) -> Dict[str, bool]:
    return {"cancelled": integration.flow.cancel("Cancelled via API")}


@router.get("/connections")
async def list_connections(
    connector: Optional[str] = Query(None),
    integration: AlloyIntegration = Depends(get_integration),
) -> Dict[str, Any]:
    try:
        connections = await integration.flow.list_connections(connector)
    except AlloyError as exc:
        raise _http_error(exc)
    ordered = sort_by_recency(connections)
    return {
        "count": len(ordered),
        "connections": [_connection_json(c) for c in ordered],
    }


@router.get("/connections/{connection_id}")
async def get_connection(
    connection_id: str,
    integration: AlloyIntegration = Depends(get_integration),
) -> Dict[str, Any]:
    """One listed connection, normalised; 404 when Alloy does not list it."""
    try:
        connections = await integration.flow.list_connections()
    except AlloyError as exc:
        raise _http_error(exc)
    for c in connections:
        if c.connection_id == connection_id:
            return _connection_json(c)
    raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Connection '{connection_id}' not found")


@router.post("/connections/validate")
async def validate_connections(
    body: ValidateRequest,
    integration: AlloyIntegration = Depends(get_integration),
) -> Dict[str, Any]:
    """
    Probe connections and report which work.

    With explicit ``connectionIds`` only those are probed; otherwise the
    configured id and then the listed connections are tried.
    """
    validator = integration.validator(body.connector_id)
    if body.connection_ids:
        report = await validator.validate(
            [Connection(connection_id=cid, connector_id=body.connector_id) for cid in body.connection_ids]
        )
    else:
        report = await integration.resolve_connection(body.connector_id)

    return {
        "working": [_connection_json(c) for c in report.working],
        "broken": [
            {**_connection_json(r.connection), "errorCode": r.error_code, "error": r.error_message}
            for r in report.results
            if not r.working
        ],
        "recommended": report.recommended.connection_id if report.recommended else None,
    }


@router.post("/actions/{connector_id}/{action_id}")
async def execute_action(
    connector_id: str,
    action_id: str,
    body: ExecuteRequest,
    integration: AlloyIntegration = Depends(get_integration),
) -> Dict[str, Any]:
    try:
        connection_id = body.connection_id or (
            await integration.ensure_connection(connector_id)
        ).connection_id
        result = await integration.executor.execute(
            connector_id,
            action_id,
            connection_id,
            body.parameters,
            retryable=body.retryable,
            idempotency_key=body.idempotency_key,
        )
    except AlloyError as exc:
        logger.error("Action %s/%s failed: %s", connector_id, action_id, exc)
        raise _http_error(exc)
    return {"data": result.data, "attempts": result.attempts}
