"""
ConnectorRegistry — the connectors this package knows how to drive.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Type

from connectors.base import BaseConnector
from connectors.notion import NotionConnector

logger = logging.getLogger(__name__)

# ── All known connectors (add new ones here) ─────────────────────────────

_ALL_CONNECTORS: List[Type[BaseConnector]] = [
    NotionConnector,
]


class ConnectorRegistry:
    """Singleton registry of connector classes keyed by Alloy connector id."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._connectors = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    def discover(self) -> None:
        if self._discovered:
            return
        for connector in _ALL_CONNECTORS:
            self.register(connector)
        self._discovered = True

    def register(self, connector: Type[BaseConnector]) -> None:
        self._connectors[connector.connector_id] = connector
        logger.debug("Connector registered: %s (%s)", connector.display_name, connector.connector_id)

    def get(self, connector_id: str) -> Optional[Type[BaseConnector]]:
        self.discover()
        return self._connectors.get(connector_id)

    def list_providers(self) -> List[Dict[str, str]]:
        self.discover()
        return [c.info() for c in self._connectors.values()]
