"""MCP tools for reading cached entities and searching them."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mcp.types import TextContent, Tool

from ahacache.entities import UnsupportedEntityTypeError, resolve_entity_kind, supported_entity_types
from ahacache.mcp_tools.common import (
    NOT_FOUND,
    REMOTE_ERROR,
    UNAVAILABLE,
    VALIDATION_ERROR,
    Handler,
    _error,
    _text,
    _validate_int_range,
    _validate_number_range,
    _validate_str,
)
from ahacache.remote import RemoteSourceError
from ahacache.similarity import DEFAULT_THRESHOLD

if TYPE_CHECKING:
    from ahacache.gateway import Gateway

# Fixed score reported by the substring fallback when vectors are disabled.
TEXT_MATCH_SCORE = 0.8
DEFAULT_SEARCH_LIMIT = 10

_ENTITY_TYPE_SCHEMA = {
    "type": "string",
    "description": "Entity type, plural or singular (features, feature, epics, ideas, ...)",
}


def register() -> tuple[list[Tool], dict[str, Handler]]:
    """Return (tool_definitions, handler_map) for entity read tools."""
    tools = [
        Tool(
            name="aha_list_entities",
            description="List entities of one type. Served from the local cache when it has matching rows, otherwise from Aha!.",
            inputSchema={
                "type": "object",
                "properties": {
                    "entity_type": _ENTITY_TYPE_SCHEMA,
                    "filters": {
                        "type": "object",
                        "description": "Column filters, e.g. {\"product_id\": \"P1\"}. Unknown columns force a remote read.",
                    },
                    "page": {"type": "integer", "default": 1, "minimum": 1},
                    "page_size": {"type": "integer", "default": 20, "minimum": 1, "maximum": 200},
                    "force_remote": {"type": "boolean", "default": False, "description": "Skip the cache"},
                },
                "required": ["entity_type"],
            },
        ),
        Tool(
            name="aha_get_entity",
            description="Get one entity by id, from the cache when present, otherwise from Aha!.",
            inputSchema={
                "type": "object",
                "properties": {
                    "entity_type": _ENTITY_TYPE_SCHEMA,
                    "entity_id": {"type": "string", "description": "Entity id or reference number"},
                    "force_remote": {"type": "boolean", "default": False, "description": "Skip the cache"},
                },
                "required": ["entity_type", "entity_id"],
            },
        ),
        Tool(
            name="aha_semantic_search",
            description=(
                "Search cached entities by meaning. Falls back to a case-insensitive text match "
                "when semantic search is disabled."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Natural language query"},
                    "entity_types": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Restrict to these entity types (default: all)",
                    },
                    "limit": {"type": "integer", "default": DEFAULT_SEARCH_LIMIT, "minimum": 1},
                    "threshold": {
                        "type": "number",
                        "default": DEFAULT_THRESHOLD,
                        "description": "Minimum cosine similarity (-1 to 1)",
                    },
                },
                "required": ["query"],
            },
        ),
    ]

    handlers: dict[str, Handler] = {
        "aha_list_entities": _handle_list_entities,
        "aha_get_entity": _handle_get_entity,
        "aha_semantic_search": _handle_semantic_search,
    }
    return tools, handlers


async def _handle_list_entities(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if err := _validate_str(arguments.get("entity_type"), "entity_type"):
        return err
    for name, lo, hi in (("page", 1, None), ("page_size", 1, 200)):
        if err := _validate_int_range(arguments.get(name), name, min_val=lo, max_val=hi):
            return err
    filters = arguments.get("filters") or {}
    if not isinstance(filters, dict):
        return _error("filters must be an object", VALIDATION_ERROR)
    try:
        result = await gateway.reader.list(
            arguments["entity_type"],
            filters,
            page=arguments.get("page", 1),
            page_size=arguments.get("page_size", 20),
            force_remote=bool(arguments.get("force_remote", False)),
        )
    except ValueError as e:
        return _error(str(e), VALIDATION_ERROR)
    except RemoteSourceError as e:
        return _error(str(e), REMOTE_ERROR)
    except RuntimeError as e:
        return _error(str(e), UNAVAILABLE)
    return _text(result)


async def _handle_get_entity(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    for name in ("entity_type", "entity_id"):
        if err := _validate_str(arguments.get(name), name):
            return err
    entity_type = arguments["entity_type"]
    entity_id = arguments["entity_id"]
    try:
        result = await gateway.reader.get(entity_type, entity_id, force_remote=bool(arguments.get("force_remote", False)))
    except ValueError as e:
        return _error(str(e), VALIDATION_ERROR)
    except RemoteSourceError as e:
        if e.status_code == 404:
            return _error(f"{entity_type} not found: {entity_id}", NOT_FOUND)
        return _error(str(e), REMOTE_ERROR)
    except RuntimeError:
        # Cache miss with no remote configured.
        return _error(f"{entity_type} not found in cache: {entity_id}", NOT_FOUND)
    return _text(result)


async def _handle_semantic_search(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if err := _validate_str(arguments.get("query"), "query"):
        return err
    settings = gateway.store.get_settings()
    if err := _validate_int_range(arguments.get("limit"), "limit", min_val=1, max_val=settings.max_search_results):
        return err
    threshold = arguments.get("threshold", DEFAULT_THRESHOLD)
    if err := _validate_number_range(threshold, "threshold", -1, 1):
        return err
    try:
        entity_types = [resolve_entity_kind(t).name for t in arguments.get("entity_types") or supported_entity_types()]
    except UnsupportedEntityTypeError as e:
        return _error(str(e), VALIDATION_ERROR)

    query: str = arguments["query"]
    limit: int = arguments.get("limit", DEFAULT_SEARCH_LIMIT)

    if gateway.index.enabled:
        vector = await gateway.embeddings.embed_query(query)
        matches = gateway.index.search(vector, entity_types, limit=limit, threshold=float(threshold))
        return _text({"mode": "semantic", "query": query, "results": matches, "count": len(matches)})

    results: list[dict[str, Any]] = []
    for entity_type in entity_types:
        kind = resolve_entity_kind(entity_type)
        for row in gateway.store.search_entities_text(kind.name, query, limit=limit):
            text = " ".join(str(row.get(c)) for c in kind.text_columns if row.get(c))
            results.append(
                {
                    "entity_type": kind.name,
                    "entity_id": row["id"],
                    "similarity": TEXT_MATCH_SCORE,
                    "text": text,
                    "metadata": {"name": row.get("name")} if row.get("name") else {},
                    "updated_at": row.get("synced_at"),
                }
            )
    results = results[:limit]
    return _text({"mode": "text", "query": query, "results": results, "count": len(results)})
