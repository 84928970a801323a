"""
NotionConnector — Notion actions executed through Alloy.

Also carries small helpers that turn plain Python values into Notion
property objects, so callers do not hand-build the nested structure.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from connectors.base import BaseConnector
from connectors.executor import ActionExecutor
from connectors.schemas import ActionParameters, ActionRequest, ActionResult

logger = logging.getLogger(__name__)

DEFAULT_NOTION_VERSION = "2022-06-28"


# ── Property helpers ────────────────────────────────────────────────────


def title_property(text: str) -> Dict[str, Any]:
    return {"type": "title", "title": [{"type": "text", "text": {"content": text}}]}


def text_property(text: str) -> Dict[str, Any]:
    return {"type": "rich_text", "rich_text": [{"type": "text", "text": {"content": text}}]}


def number_property(value: Union[int, float]) -> Dict[str, Any]:
    return {"type": "number", "number": value}


def checkbox_property(checked: bool) -> Dict[str, Any]:
    return {"type": "checkbox", "checkbox": checked}


def date_property(value: Union[str, date, datetime]) -> Dict[str, Any]:
    if isinstance(value, datetime):
        value = value.date()
    start = value.isoformat() if isinstance(value, date) else value
    return {"type": "date", "date": {"start": start}}


def select_property(option: str) -> Dict[str, Any]:
    return {"type": "select", "select": {"name": option}}


def to_notion_property(key: str, value: Any) -> Optional[Dict[str, Any]]:
    """
    Guess the Notion property type from a Python value.

    ``title`` is always a title; dicts are assumed to already be in Notion
    format.  Returns None for values with no sensible mapping.
    """
    if key == "title":
        return title_property(str(value))
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return checkbox_property(value)
    if isinstance(value, (int, float)):
        return number_property(value)
    if isinstance(value, (date, datetime)):
        return date_property(value)
    if isinstance(value, str):
        return text_property(value)
    if isinstance(value, dict):
        return value
    return None


def to_notion_properties(values: Dict[str, Any]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for key, value in values.items():
        prop = to_notion_property(key, value)
        if prop is None:
            logger.warning("Skipping property %r: unsupported value type %s", key, type(value).__name__)
            continue
        properties[key] = prop
    return properties


def build_parent(
    parent_page_id: Optional[str] = None,
    parent_database_id: Optional[str] = None,
) -> Dict[str, Any]:
    if parent_page_id:
        return {"type": "page_id", "page_id": parent_page_id}
    if parent_database_id:
        return {"type": "database_id", "database_id": parent_database_id}
    return {"type": "workspace", "workspace": True}


# ── Connector ───────────────────────────────────────────────────────────


class NotionConnector(BaseConnector):
    connector_id = "notion"
    display_name = "Notion"
    description = "Connect to a Notion workspace to manage pages, databases, and blocks"
    icon = "📝"

    probe_action = "post-search"
    probe_body = {"filter": {"value": "page", "property": "object"}, "page_size": 1}

    def __init__(
        self,
        executor: ActionExecutor,
        connection_id: str,
        *,
        notion_version: str = DEFAULT_NOTION_VERSION,
    ) -> None:
        super().__init__(executor, connection_id)
        self._notion_version = notion_version

    def _params(
        self,
        request_body: Optional[Dict[str, Any]] = None,
        **path_params: str,
    ) -> ActionParameters:
        return ActionParameters(
            request_body=request_body,
            headers={"Notion-Version": self._notion_version},
            path_params=path_params,
        )

    # ── Reads ───────────────────────────────────────────────────────────

    async def search(
        self,
        query: Optional[str] = None,
        object_type: str = "page",
        page_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Search pages (or databases with ``object_type="database"``)."""
        body: Dict[str, Any] = {"filter": {"value": object_type, "property": "object"}}
        if query:
            body["query"] = query
        if page_size:
            body["page_size"] = page_size
        result = await self._run("post-search", self._params(body))
        return _results(result)

    async def get_page(self, page_id: str) -> Dict[str, Any]:
        result = await self._run("retrieve-a-page", self._params(page_id=page_id))
        return result.data

    async def query_database(
        self,
        database_id: str,
        query: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        result = await self._run(
            "post-database-query",
            self._params(query or {}, database_id=database_id),
        )
        return _results(result)

    async def get_database(self, database_id: str) -> Dict[str, Any]:
        result = await self._run("retrieve-a-database", self._params(database_id=database_id))
        return result.data

    # ── Writes (not retried without an idempotency key) ─────────────────

    async def create_page(
        self,
        parent: Dict[str, Any],
        properties: Dict[str, Any],
        *,
        children: Optional[List[Dict[str, Any]]] = None,
        icon: Optional[Dict[str, Any]] = None,
        cover: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = _page_body(parent, properties, children, icon, cover)
        result = await self._run("post-page", self._params(body), idempotency_key=idempotency_key)
        return result.data

    async def update_page(
        self,
        page_id: str,
        *,
        properties: Optional[Dict[str, Any]] = None,
        archived: Optional[bool] = None,
        icon: Optional[Dict[str, Any]] = None,
        cover: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if properties is not None:
            body["properties"] = properties
        if archived is not None:
            body["archived"] = archived
        if icon is not None:
            body["icon"] = icon
        if cover is not None:
            body["cover"] = cover
        result = await self._run(
            "patch-page",
            self._params(body, page_id=page_id),
            idempotency_key=idempotency_key,
        )
        return result.data

    async def create_simple_page(
        self,
        title: str,
        *,
        parent_page_id: Optional[str] = None,
        parent_database_id: Optional[str] = None,
        **values: Any,
    ) -> Dict[str, Any]:
        """
        Create a page from plain values.

        Workspace and sub-page parents only accept a title; extra values are
        only sent for database parents.
        """
        if values and not parent_database_id:
            logger.warning(
                "Only 'title' is allowed outside a database; ignoring %s", ", ".join(values)
            )
            values = {}
        properties = to_notion_properties({"title": title, **values})
        return await self.create_page(build_parent(parent_page_id, parent_database_id), properties)

    async def update_page_simple(self, page_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self.update_page(page_id, properties=to_notion_properties(updates))

    async def create_pages(
        self,
        pages: Sequence[Dict[str, Any]],
        *,
        concurrency: int = 3,
    ) -> List[Union[Dict[str, Any], BaseException]]:
        """
        Create many pages with a bounded window of concurrent calls.

        Each item is ``{"parent": ..., "properties": ..., "idempotency_key"?: ...}``.
        Failed items hold their exception; the rest still go through.
        """
        requests = [
            ActionRequest(
                connector_id=self.connector_id,
                action_id="post-page",
                connection_id=self.connection_id,
                parameters=self._params(
                    _page_body(p["parent"], p["properties"], p.get("children"), p.get("icon"), p.get("cover"))
                ),
                idempotency_key=p.get("idempotency_key"),
            )
            for p in pages
        ]
        outcomes = await self._executor.execute_many(requests, concurrency=concurrency)
        return [o.data if isinstance(o, ActionResult) else o for o in outcomes]


def _page_body(
    parent: Dict[str, Any],
    properties: Dict[str, Any],
    children: Optional[List[Dict[str, Any]]],
    icon: Optional[Dict[str, Any]],
    cover: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"parent": parent, "properties": properties}
    if children:
        body["children"] = children
    if icon:
        body["icon"] = icon
    if cover:
        body["cover"] = cover
    return body


def _results(result: ActionResult) -> List[Dict[str, Any]]:
    data = result.data
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return data["results"]
    return []
