"""MCP tools for server settings and cache health."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any

from mcp.types import TextContent, Tool

from ahacache.config import config_summary
from ahacache.db_base import ConfigurationError, StoreClosedError
from ahacache.mcp_tools.common import NOT_FOUND, VALIDATION_ERROR, Handler, _error, _text, _validate_str

if TYPE_CHECKING:
    from ahacache.gateway import Gateway

logger = logging.getLogger(__name__)


def register() -> tuple[list[Tool], dict[str, Handler]]:
    """Return (tool_definitions, handler_map) for admin tools."""
    tools = [
        Tool(
            name="aha_config_get",
            description="Get one cache setting, or all settings plus the (token-free) server configuration",
            inputSchema={
                "type": "object",
                "properties": {"key": {"type": "string", "description": "Setting key, e.g. max_concurrent_syncs"}},
            },
        ),
        Tool(
            name="aha_config_set",
            description="Set a cache setting. Known settings are type-checked.",
            inputSchema={
                "type": "object",
                "properties": {
                    "key": {"type": "string", "description": "Setting key"},
                    "value": {"type": ["string", "number", "boolean"], "description": "New value"},
                    "description": {"type": "string", "description": "Optional human-readable note"},
                },
                "required": ["key", "value"],
            },
        ),
        Tool(
            name="aha_cache_health",
            description="Cache store, sync, and embedding health with per-entity-type counts",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]
    handlers: dict[str, Handler] = {
        "aha_config_get": _handle_config_get,
        "aha_config_set": _handle_config_set,
        "aha_cache_health": _handle_cache_health,
    }
    return tools, handlers


async def _handle_config_get(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    key = arguments.get("key")
    if key is None:
        return _text(
            {
                "settings": gateway.store.get_config(),
                "server": config_summary(gateway.config, gateway.config_path),
            }
        )
    if err := _validate_str(key, "key"):
        return err
    value = gateway.store.get_config(key)
    if value is None:
        return _error(f"Setting not found: {key}", NOT_FOUND)
    return _text({"key": key, "value": value})


async def _handle_config_set(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if err := _validate_str(arguments.get("key"), "key"):
        return err
    value = arguments.get("value")
    if value is None or isinstance(value, dict | list):
        return _error("value must be a string, number, or boolean", VALIDATION_ERROR)
    key = arguments["key"]
    try:
        gateway.store.set_config(key, value, arguments.get("description"))
    except ConfigurationError as e:
        return _error(str(e), VALIDATION_ERROR)
    return _text({"status": "ok", "key": key, "value": gateway.store.get_config(key)})


async def _handle_cache_health(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    health: dict[str, Any] = {
        "store": gateway.store.health_status(),
        "sync": gateway.sync.health_status() if gateway.sync is not None else None,
        "embeddings": gateway.embeddings.health_status(),
        "entities": [],
        "embedding_count": 0,
        "server": config_summary(gateway.config, gateway.config_path),
    }
    try:
        health["entities"] = gateway.store.entity_sync_summary()
        health["embedding_count"] = gateway.store.count_embeddings()
    except (sqlite3.Error, StoreClosedError) as exc:
        logger.warning("Entity summary unavailable: %s", exc)
    return _text(health)
