"""MCP tools for sync and embedding jobs.

Both families expose the same start/status/pause/resume/stop shape; only
sync has history and cleanup tools, since embedding jobs are cleaned up
together with sync jobs by ``aha_sync_cleanup``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mcp.types import TextContent, Tool

from ahacache.db_base import JobFamily, JobNotFoundError
from ahacache.jobs import JobRunner
from ahacache.mcp_tools.common import (
    INVALID_STATE,
    NOT_FOUND,
    UNAVAILABLE,
    VALIDATION_ERROR,
    Handler,
    _error,
    _text,
    _validate_int_range,
    _validate_str,
    _validate_str_list,
)

if TYPE_CHECKING:
    from ahacache.gateway import Gateway

_PREFIX: dict[JobFamily, str] = {"sync": "aha_sync", "embedding": "aha_embeddings"}
_JOB_ID_SCHEMA = {
    "type": "object",
    "properties": {"job_id": {"type": "string", "description": "Job id returned by the start tool"}},
    "required": ["job_id"],
}


def register() -> tuple[list[Tool], dict[str, Handler]]:
    """Return (tool_definitions, handler_map) for job tools."""
    tools = [
        Tool(
            name="aha_sync_start",
            description="Start a background job that mirrors Aha! entities into the local cache. Returns the job id immediately.",
            inputSchema={
                "type": "object",
                "properties": {
                    "entity_types": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Entity types to sync (features, epics, ideas, ...)",
                    },
                    "batch_size": {"type": "integer", "minimum": 1, "maximum": 200, "description": "Records per page"},
                    "updated_since": {"type": "string", "description": "ISO timestamp; only records updated after it"},
                    "concurrency": {
                        "type": "integer",
                        "minimum": 1,
                        "default": 1,
                        "description": "Entity types paged at once within this job",
                    },
                },
                "required": ["entity_types"],
            },
        ),
        Tool(
            name="aha_embeddings_start",
            description="Start a background job that computes vectors for cached entities that have none yet.",
            inputSchema={
                "type": "object",
                "properties": {
                    "entity_types": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Entity types to embed",
                    },
                    "batch_size": {"type": "integer", "minimum": 1, "maximum": 500, "description": "Entities per batch"},
                    "text_fields": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Fields joined into the embedded text (default: name and description)",
                    },
                },
                "required": ["entity_types"],
            },
        ),
        Tool(
            name="aha_sync_history",
            description="Get the history rows of a sync job, newest first",
            inputSchema={
                "type": "object",
                "properties": {
                    "job_id": {"type": "string", "description": "Sync job id"},
                    "limit": {"type": "integer", "default": 100, "minimum": 1, "maximum": 1000},
                },
                "required": ["job_id"],
            },
        ),
        Tool(
            name="aha_sync_cleanup",
            description="Delete completed and failed sync and embedding jobs older than max_age_days, with their history",
            inputSchema={
                "type": "object",
                "properties": {"max_age_days": {"type": "integer", "default": 7, "minimum": 0}},
            },
        ),
    ]
    handlers: dict[str, Handler] = {
        "aha_sync_start": _handle_sync_start,
        "aha_embeddings_start": _handle_embeddings_start,
        "aha_sync_history": _handle_sync_history,
        "aha_sync_cleanup": _handle_sync_cleanup,
    }

    for family, prefix in _PREFIX.items():
        label = "sync" if family == "sync" else "embedding"
        tools.extend(
            [
                Tool(
                    name=f"{prefix}_status",
                    description=f"Progress of one {label} job, or all active {label} jobs when job_id is omitted",
                    inputSchema={
                        "type": "object",
                        "properties": {"job_id": {"type": "string", "description": f"{label.capitalize()} job id"}},
                    },
                ),
                Tool(
                    name=f"{prefix}_pause",
                    description=f"Pause a {label} job at its next checkpoint",
                    inputSchema=_JOB_ID_SCHEMA,
                ),
                Tool(
                    name=f"{prefix}_resume",
                    description=f"Resume a paused {label} job from where it stopped",
                    inputSchema=_JOB_ID_SCHEMA,
                ),
                Tool(
                    name=f"{prefix}_stop",
                    description=f"Stop a {label} job. The job ends as failed and cannot be resumed",
                    inputSchema=_JOB_ID_SCHEMA,
                ),
            ]
        )
        handlers[f"{prefix}_status"] = _status_handler(family)
        handlers[f"{prefix}_pause"] = _control_handler(family, "pause")
        handlers[f"{prefix}_resume"] = _control_handler(family, "resume")
        handlers[f"{prefix}_stop"] = _control_handler(family, "stop")

    return tools, handlers


def _runner(gateway: Gateway, family: JobFamily) -> JobRunner | None:
    return gateway.sync if family == "sync" else gateway.embeddings


_SYNC_UNAVAILABLE = "Sync is unavailable: Aha! company and token are not configured"


async def _handle_sync_start(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if gateway.sync is None:
        return _error(_SYNC_UNAVAILABLE, UNAVAILABLE)
    if err := _validate_str_list(arguments.get("entity_types"), "entity_types"):
        return err
    if err := _validate_int_range(arguments.get("batch_size"), "batch_size", min_val=1, max_val=200):
        return err
    if err := _validate_int_range(arguments.get("concurrency"), "concurrency", min_val=1):
        return err
    try:
        job_id = await gateway.sync.start_sync(
            arguments["entity_types"],
            batch_size=arguments.get("batch_size"),
            updated_since=arguments.get("updated_since"),
            concurrency=arguments.get("concurrency", 1),
        )
    except ValueError as e:
        return _error(str(e), VALIDATION_ERROR)
    return _text({"job_id": job_id, "status": _status_of(gateway, "sync", job_id)})


async def _handle_embeddings_start(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if err := _validate_str_list(arguments.get("entity_types"), "entity_types"):
        return err
    if err := _validate_int_range(arguments.get("batch_size"), "batch_size", min_val=1, max_val=500):
        return err
    text_fields = arguments.get("text_fields")
    if text_fields is not None and (err := _validate_str_list(text_fields, "text_fields")):
        return err
    try:
        job_id = await gateway.embeddings.start_embedding(
            arguments["entity_types"],
            batch_size=arguments.get("batch_size"),
            text_fields=text_fields,
        )
    except ValueError as e:
        return _error(str(e), VALIDATION_ERROR)
    return _text({"job_id": job_id, "status": _status_of(gateway, "embedding", job_id)})


def _status_of(gateway: Gateway, family: JobFamily, job_id: str) -> str | None:
    job = gateway.store.get_job(family, job_id)
    return job["status"] if job is not None else None


async def _handle_sync_history(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if err := _validate_str(arguments.get("job_id"), "job_id"):
        return err
    if err := _validate_int_range(arguments.get("limit"), "limit", min_val=1, max_val=1000):
        return err
    job_id = arguments["job_id"]
    if gateway.store.get_job("sync", job_id) is None:
        return _error(f"Sync job not found: {job_id}", NOT_FOUND)
    history = gateway.store.get_history("sync", job_id, limit=arguments.get("limit", 100))
    return _text({"job_id": job_id, "history": history})


async def _handle_sync_cleanup(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
    if err := _validate_int_range(arguments.get("max_age_days"), "max_age_days", min_val=0):
        return err
    max_age_days = arguments.get("max_age_days", 7)
    if gateway.sync is not None:
        removed = {"sync_jobs": gateway.sync.cleanup_old_sync_jobs(max_age_days)}
    else:
        removed = {"sync_jobs": gateway.store.cleanup_old_jobs("sync", max_age_days)}
    removed["embedding_jobs"] = gateway.embeddings.cleanup_old_embedding_jobs(max_age_days)
    return _text({"status": "ok", "max_age_days": max_age_days, **removed})


def _status_handler(family: JobFamily) -> Handler:
    async def handle(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
        runner = _runner(gateway, family)
        job_id = arguments.get("job_id")
        if job_id is None:
            if runner is None:
                return _text({"active": [], "health": None})
            return _text({"active": runner.get_active(), "health": runner.health_status()})
        if err := _validate_str(job_id, "job_id"):
            return err
        if runner is None:
            return _error(_SYNC_UNAVAILABLE, UNAVAILABLE)
        progress = runner.get_progress(job_id)
        if progress is None:
            return _error(f"{family.capitalize()} job not found: {job_id}", NOT_FOUND)
        return _text(progress)

    return handle


def _control_handler(family: JobFamily, action: str) -> Handler:
    async def handle(gateway: Gateway, arguments: dict[str, Any]) -> list[TextContent]:
        if err := _validate_str(arguments.get("job_id"), "job_id"):
            return err
        runner = _runner(gateway, family)
        if runner is None:
            return _error(_SYNC_UNAVAILABLE, UNAVAILABLE)
        job_id = arguments["job_id"]
        try:
            changed = getattr(runner, action)(job_id)
        except JobNotFoundError:
            return _error(f"{family.capitalize()} job not found: {job_id}", NOT_FOUND)
        job = gateway.store.get_job(family, job_id)
        status = job["status"] if job is not None else None
        if not changed:
            return _error(f"Cannot {action} job {job_id} in status {status}", INVALID_STATE)
        return _text({"job_id": job_id, "action": action, "status": status})

    return handle
