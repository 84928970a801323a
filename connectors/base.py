"""
BaseConnector — typed façade over the generic action executor.

Every connector reachable through Alloy (Notion, …) subclasses this, names its
actions, and declares a cheap read the validator can use as a probe.
"""

from __future__ import annotations

from abc import ABC
from typing import Any, ClassVar, Dict, Optional

from connectors.executor import ActionExecutor, Parameters
from connectors.schemas import ActionResult


class BaseConnector(ABC):
    """Binds an executor to one connector and one connection."""

    # ── Identity ────────────────────────────────────────────────────────
    connector_id: ClassVar[str]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    icon: ClassVar[str] = "🔗"

    # ── Probe used by ConnectionValidator ───────────────────────────────
    probe_action: ClassVar[str]
    probe_body: ClassVar[Dict[str, Any]] = {}

    def __init__(self, executor: ActionExecutor, connection_id: str) -> None:
        self._executor = executor
        self.connection_id = connection_id

    async def _run(
        self,
        action_id: str,
        parameters: Parameters = None,
        *,
        idempotency_key: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> ActionResult:
        return await self._executor.execute(
            self.connector_id,
            action_id,
            self.connection_id,
            parameters,
            retryable=retryable,
            idempotency_key=idempotency_key,
        )

    @classmethod
    def info(cls) -> Dict[str, str]:
        return {
            "id": cls.connector_id,
            "name": cls.display_name,
            "icon": cls.icon,
            "description": cls.description,
        }
