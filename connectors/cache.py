"""
In-process cache of connection ids and their last known status.

Reads are plain dict lookups; writes are last-writer-wins, which is fine
because probing is idempotent and converges on the same answer.
"""

from __future__ import annotations

from typing import Dict, Optional

from connectors.schemas import ConnectionStatus


class ConnectionCache:
    def __init__(self) -> None:
        self._selected: Dict[str, str] = {}
        self._status: Dict[str, ConnectionStatus] = {}

    # ── connector → selected connection id ──────────────────────────────

    def get(self, connector_id: str) -> Optional[str]:
        return self._selected.get(connector_id)

    def set(self, connector_id: str, connection_id: str) -> None:
        self._selected[connector_id] = connection_id

    # ── connection id → last known status ───────────────────────────────

    def status(self, connection_id: str) -> ConnectionStatus:
        return self._status.get(connection_id, ConnectionStatus.UNKNOWN)

    def record_status(self, connection_id: str, status: ConnectionStatus) -> None:
        self._status[connection_id] = status
        if status == ConnectionStatus.INACTIVE:
            for connector, selected in list(self._selected.items()):
                if selected == connection_id:
                    del self._selected[connector]

    def is_inactive(self, connection_id: str) -> bool:
        return self.status(connection_id) == ConnectionStatus.INACTIVE

    def clear(self) -> None:
        self._selected.clear()
        self._status.clear()
