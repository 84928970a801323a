"""
Helpers for the loosely shaped connection records Alloy returns.

Listings have used ``credentialId``, ``id``, ``_id`` and ``connectionId`` for
the same thing over time, so everything reading them goes through here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from connectors.schemas import Connection, ConnectionStatus

logger = logging.getLogger(__name__)

_ID_KEYS = ("credentialId", "id", "_id", "connectionId")
_CONNECTOR_KEYS = ("connectorId", "connector", "integrationId")
_CREATED_KEYS = ("createdAt", "created_at")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def get_connection_id(record: Dict[str, Any]) -> Optional[str]:
    for key in _ID_KEYS:
        value = record.get(key)
        if value:
            return str(value)
    return None


def get_connector_id(record: Dict[str, Any]) -> str:
    for key in _CONNECTOR_KEYS:
        value = record.get(key)
        if value:
            return str(value)
    return "unknown"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch milliseconds → aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _parse_status(value: Any) -> ConnectionStatus:
    if isinstance(value, str):
        try:
            return ConnectionStatus(value.lower())
        except ValueError:
            pass
    return ConnectionStatus.UNKNOWN


def to_connection(record: Dict[str, Any]) -> Optional[Connection]:
    """Normalise one listing record.  Records with no id at all yield None."""
    connection_id = get_connection_id(record)
    if not connection_id:
        return None
    created = None
    for key in _CREATED_KEYS:
        created = parse_timestamp(record.get(key))
        if created:
            break
    return Connection(
        connection_id=connection_id,
        connector_id=get_connector_id(record),
        status=_parse_status(record.get("status")),
        created_at=created,
        name=record.get("name"),
        type=record.get("type"),
    )


def to_connections(records: Iterable[Any]) -> List[Connection]:
    connections: List[Connection] = []
    for record in records:
        if not isinstance(record, dict):
            logger.debug("Skipping non-object connection record: %r", record)
            continue
        conn = to_connection(record)
        if conn is None:
            logger.debug("Skipping connection record without an id: %s", record)
            continue
        connections.append(conn)
    return connections


def matches_connector(conn: Connection, connector_id: str) -> bool:
    """
    True when ``conn`` belongs to ``connector_id``.

    Alloy sometimes omits the connector and only hints at it through the
    credential type (``notion-oauth2``) or the display name.
    """
    wanted = connector_id.lower()
    return (
        conn.connector_id.lower() == wanted
        or wanted in (conn.type or "").lower()
        or wanted in (conn.name or "").lower()
    )


def filter_by_connector(connections: Iterable[Connection], connector_id: str) -> List[Connection]:
    return [c for c in connections if matches_connector(c, connector_id)]


def sort_by_recency(connections: Iterable[Connection]) -> List[Connection]:
    """Newest first; connections without a timestamp go last."""
    return sorted(connections, key=lambda c: c.created_at or _EPOCH, reverse=True)


def format_connection(conn: Connection) -> str:
    """Multi-line human summary used by the CLI-style logs."""
    return "\n".join(
        [
            f"  Connection ID (credentialId): {conn.connection_id}",
            f"  Connector ID: {conn.connector_id}",
            f"  Name: {conn.name or 'N/A'}",
            f"  Type: {conn.type or 'N/A'}",
            f"  Created: {conn.created_at.isoformat() if conn.created_at else 'N/A'}",
            f"  Status: {conn.status.value}",
        ]
    )
