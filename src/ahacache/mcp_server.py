"""MCP server exposing the Aha! cache to LLM clients.

Tools are defined in ``ahacache.mcp_tools`` modules and dispatched by name.
Every handler receives the ``Gateway`` explicitly; the server holds no
module-level store or orchestrator.

Usage:
    ahacache-mcp                       # stdio, config from env + ~/.aha-mcp-config.json
    ahacache-mcp --db-path ./cache.db  # override the cache location
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from ahacache.config import load_config, validate_config
from ahacache.gateway import Gateway
from ahacache.mcp_tools import admin, entities, jobs
from ahacache.mcp_tools.common import Handler, _error

logger = logging.getLogger(__name__)

SERVER_NAME = "ahacache"


def _collect_tools() -> tuple[list[Tool], dict[str, Handler]]:
    tools: list[Tool] = []
    handlers: dict[str, Handler] = {}
    for module in (entities, jobs, admin):
        module_tools, module_handlers = module.register()
        tools.extend(module_tools)
        handlers.update(module_handlers)
    return tools, handlers


_TOOLS, _HANDLERS = _collect_tools()


def list_tools() -> list[Tool]:
    return list(_TOOLS)


async def call_tool(gateway: Gateway, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
    """Dispatch one tool call and log it with its duration."""
    arguments = arguments or {}
    handler = _HANDLERS.get(name)
    if handler is None:
        return _error(f"Unknown tool: {name}", "unknown_tool")
    t0 = time.monotonic()
    try:
        result = await handler(gateway, arguments)
    except Exception:
        logger.error("tool_error", extra={"tool": name, "args_data": arguments}, exc_info=True)
        raise
    duration_ms = round((time.monotonic() - t0) * 1000, 1)
    logger.info("tool_call", extra={"tool": name, "args_data": arguments, "duration_ms": duration_ms})
    return result


def create_server(gateway: Gateway) -> Server:
    server = Server(SERVER_NAME)

    @server.list_tools()  # type: ignore[untyped-decorator,no-untyped-call]
    async def _list_tools() -> list[Tool]:
        return list_tools()

    @server.call_tool()  # type: ignore[untyped-decorator]
    async def _call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        return await call_tool(gateway, name, arguments)

    return server


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def _run(config_path: Path | None, db_path: Path | None) -> None:
    config = load_config(config_path)
    if db_path is not None:
        config["db_path"] = str(db_path)
    errors = validate_config(config)
    if errors:
        print("Error: invalid configuration:\n  " + "\n  ".join(errors), file=sys.stderr)
        sys.exit(1)
    if config.get("mode") == "sse":
        print("Warning: SSE transport is not available; serving over stdio.", file=sys.stderr)

    from ahacache.logging import setup_logging

    log_dir = Path(config.get("log_dir") or Path(config["db_path"]).parent / "logs")
    setup_logging(log_dir)

    gateway = Gateway.build(config, config_path=config_path)
    logger.info("mcp_server_start", extra={"tool": "server", "db_path": config["db_path"]})
    server = create_server(gateway)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await gateway.aclose()
        logger.info("mcp_server_stop", extra={"tool": "server"})


def main() -> None:
    parser = argparse.ArgumentParser(description="Aha! cache MCP server")
    parser.add_argument("--config", type=Path, default=None, help="Config file (default: ~/.aha-mcp-config.json)")
    parser.add_argument("--db-path", type=Path, default=None, help="SQLite cache path (default: from config)")
    args = parser.parse_args()

    asyncio.run(_run(args.config, args.db_path))


if __name__ == "__main__":
    main()
