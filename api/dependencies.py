"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from core.integration import AlloyIntegration


def get_integration(request: Request) -> AlloyIntegration:
    """The process-wide integration created in ``main.create_app``."""
    integration = getattr(request.app.state, "integration", None)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integration not initialised",
        )
    return integration
