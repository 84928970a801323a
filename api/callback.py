"""
OAuth redirect routes — where the browser lands after the user consents.

GET  /oauth/callback       browser redirect (query string, or fragment via JS)
POST /api/oauth/callback   same data posted as JSON by a script or frontend

Both read the flow controller from ``request.app.state.flow`` so the same
router serves the main app and the short-lived callback receiver.
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from connectors.errors import AlloyError, CodeAlreadyUsed, InvalidFlowState
from connectors.oauth_flow import OAuthFlowController
from connectors.schemas import CallbackPayload, FlowState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])

FRAGMENT_MARKER = "_fragment_checked"


class CallbackBody(BaseModel):
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    connector_id: str = Field(default="notion", alias="connectorId")
    credential_id: Optional[str] = Field(default=None, alias="credentialId")

    model_config = {"populate_by_name": True}


def _flow(request: Request) -> OAuthFlowController:
    flow = getattr(request.app.state, "flow", None)
    if flow is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "OAuth flow not configured")
    return flow


async def _exchange_here(
    flow: OAuthFlowController,
    code: str,
    connector_id: str,
    credential_id: Optional[str] = None,
):
    """
    Exchange a code that no task is awaiting.

    Covers a grant started over REST (nobody parked in ``await_callback``)
    and a redirect for a grant this process never started (e.g. after a
    restart).
    """
    if flow.state in (FlowState.EXCHANGED, FlowState.FAILED):
        flow.reset()
    if flow.pending is not None and flow.state == FlowState.INITIATED:
        return await flow.exchange(code, credential_id)
    return await flow.exchange(code, credential_id, connector_id=connector_id)


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_redirect(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    fragment_checked: Optional[str] = Query(None, alias=FRAGMENT_MARKER),
    connector: str = Query("notion"),
) -> HTMLResponse:
    flow = _flow(request)

    if not code and not error and not fragment_checked:
        # Parameters may be in the URL fragment, which never reaches the server.
        return HTMLResponse(_fragment_html())

    payload = CallbackPayload(
        code=code or None,
        state=state or None,
        error=error or None,
        error_description=error_description or None,
    )

    if flow.deliver_callback(payload):
        if payload.error:
            return HTMLResponse(_callback_html(False, f"Authorization failed: {payload.error}"))
        if not payload.code:
            return HTMLResponse(_callback_html(False, _MISSING_CODE_MESSAGE))
        return HTMLResponse(_callback_html(True, "Authorization received. Finishing connection…"))

    if payload.error:
        return HTMLResponse(_callback_html(False, f"Authorization failed: {payload.error}"))
    if not payload.code:
        return HTMLResponse(_callback_html(False, _MISSING_CODE_MESSAGE))

    try:
        result = await _exchange_here(flow, payload.code, connector)
    except AlloyError as exc:
        logger.error("OAuth callback exchange failed: %s", exc)
        return HTMLResponse(_callback_html(False, f"Connection failed: {exc}"))
    return HTMLResponse(_callback_html(True, f"Connected. Connection ID: {result.connection_id}"))


@router.post("/api/oauth/callback")
async def oauth_callback_json(request: Request, body: CallbackBody) -> Dict[str, Any]:
    flow = _flow(request)
    payload = CallbackPayload(
        code=body.code,
        state=body.state,
        error=body.error,
        error_description=body.error_description,
    )

    if flow.deliver_callback(payload):
        return {"success": not (payload.error or not payload.code), "delivered": True}

    if payload.error:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail={"error": payload.error, "errorDescription": payload.error_description},
        )
    if not payload.code:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=_MISSING_CODE_MESSAGE)

    try:
        result = await _exchange_here(flow, payload.code, body.connector_id, body.credential_id)
    except CodeAlreadyUsed as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    except InvalidFlowState as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    except AlloyError as exc:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail=str(exc))

    return {
        "success": True,
        "delivered": False,
        "connectionId": result.connection_id,
        "credentialId": result.credential_id,
        "connectorId": result.connector_id,
    }


# ── HTML templates ─────────────────────────────────────────────────────

_MISSING_CODE_MESSAGE = (
    "No authorization code was received. The connection may still have been "
    "created; check your connections before authorizing again."
)


def _fragment_html() -> str:
    """Re-request this URL with the fragment parameters moved into the query."""
    return f"""<!DOCTYPE html>
<html>
<head><title>Completing authorization…</title></head>
<body>
    <p>Completing authorization…</p>
    <script>
        const params = new URLSearchParams(window.location.hash.substring(1));
        params.set({json.dumps(FRAGMENT_MARKER)}, '1');
        window.location.replace(window.location.pathname + '?' + params.toString());
    </script>
</body>
</html>"""


def _callback_html(success: bool, message: str) -> str:
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    safe = html.escape(message)

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Notion via Alloy — {status_text}</title>
    <style>
        body {{
            font-family: system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 420px;
        }}
        h2 {{ color: {color}; margin: 0 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
    </style>
</head>
<body>
    <div class="card">
        <h2>{status_text}</h2>
        <p>{safe}</p>
        <p>You can close this window.</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({{
                type: 'oauth-callback',
                success: {'true' if success else 'false'},
                message: {json.dumps(message)},
            }}, '*');
        }}
    </script>
</body>
</html>"""
