"""Command line for the Aha! cache.

Usage:
    ahacache init --company acme --token XXXX    # Save credentials, create the cache
    ahacache health                              # Store, sync, and embedding health
    ahacache config get [KEY]                    # Show cache settings
    ahacache config set KEY VALUE                # Change a cache setting
    ahacache sync features epics                 # Sync in the foreground
    ahacache embed features                      # Compute missing vectors
    ahacache cleanup --days 7                    # Drop old finished jobs
"""

from __future__ import annotations

import asyncio
import json as json_mod
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from ahacache import __version__
from ahacache.config import config_summary, load_config, read_config_file, save_config
from ahacache.core import CacheStore
from ahacache.db_base import ConfigurationError
from ahacache.gateway import Gateway
from ahacache.jobs import JobRunner
from ahacache.types.jobs import JobProgress


def _store(ctx: click.Context) -> CacheStore:
    try:
        return CacheStore.from_config(ctx.obj["config"])
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _gateway(ctx: click.Context) -> Gateway:
    """Build a gateway; tests inject ``source``/``provider`` through ``obj``."""
    try:
        return Gateway.build(
            ctx.obj["config"],
            source=ctx.obj.get("source"),
            provider=ctx.obj.get("provider"),
            config_path=ctx.obj.get("config_path"),
        )
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _print_progress(progress: JobProgress | None, as_json: bool) -> None:
    if progress is None:
        click.echo("Job disappeared before it finished", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json_mod.dumps(progress, indent=2, default=str))
        return
    click.echo(f"{progress['job_id']}: {progress['status']} ({progress['progress']}%)")
    click.echo(f"  Processed: {progress['processed_count']}/{progress['total']}")
    click.echo(f"  Errors: {progress['error_count']}")
    for err in progress["errors"]:
        click.echo(f"    - {err}")
    if progress["status"] == "failed":
        sys.exit(1)


def _run_job(
    ctx: click.Context,
    pick: Callable[[Gateway], JobRunner | None],
    start: Callable[[Any], Awaitable[str]],
) -> JobProgress | None:
    """Start a job, wait for it in the foreground, and return its final progress."""

    async def run() -> JobProgress | None:
        gateway = _gateway(ctx)
        try:
            runner = pick(gateway)
            if runner is None:
                msg = "Aha! company and token are not configured. Run 'ahacache init' first."
                raise click.ClickException(msg)
            try:
                job_id = await start(runner)
            except ValueError as e:
                raise click.ClickException(str(e)) from e
            click.echo(f"Started {job_id}", err=True)
            await runner.wait(job_id)
            return runner.get_progress(job_id)
        finally:
            await gateway.aclose()

    return asyncio.run(run())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="ahacache")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None, help="Config file (default: ~/.aha-mcp-config.json)")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite cache path")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, db_path: Path | None) -> None:
    """Local cache and sync for the Aha! API."""
    ctx.ensure_object(dict)
    config = load_config(config_path)
    if db_path is not None:
        config["db_path"] = str(db_path)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--company", default=None, help="Aha! subdomain (acme for acme.aha.io)")
@click.option("--token", default=None, help="Aha! API token")
@click.pass_context
def init(ctx: click.Context, company: str | None, token: str | None) -> None:
    """Create the cache database, optionally saving Aha! credentials."""
    config = ctx.obj["config"]
    if company or token:
        stored = read_config_file(ctx.obj["config_path"])
        if company:
            stored["company"] = config["company"] = company
        if token:
            stored["token"] = config["token"] = token
        try:
            path = save_config(stored, ctx.obj["config_path"])
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Saved configuration to {path}")

    store = _store(ctx)
    try:
        click.echo(f"Initialized cache at {store.db_path}")
        click.echo(f"  Schema version: {store.get_schema_version()}")
        click.echo(f"  Semantic search: {'enabled' if store.vector_enabled else 'disabled'}")
    finally:
        store.close()
    if not (config.get("company") and config.get("token")):
        click.echo("\nNext: ahacache init --company <subdomain> --token <api token>")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def health(ctx: click.Context, as_json: bool) -> None:
    """Show cache, sync, and embedding health."""
    store = _store(ctx)
    try:
        status = store.health_status()
        entities = store.entity_sync_summary() if status["connected"] else []
    finally:
        store.close()
    summary = config_summary(ctx.obj["config"], ctx.obj["config_path"])
    if as_json:
        click.echo(json_mod.dumps({"store": status, "entities": entities, "server": summary}, indent=2, default=str))
        return
    click.echo(f"Database: {store.db_path} ({status['db_size']} bytes)")
    click.echo(f"  Connected: {status['connected']}")
    if status["error"]:
        click.echo(f"  Error: {status['error']}")
    click.echo(f"  Semantic search: {'enabled' if status['vector_enabled'] else 'disabled'}")
    click.echo(f"  Sync jobs: {status['sync_jobs_count']}  Embedding jobs: {status['embedding_jobs_count']}")
    click.echo(f"  Last activity: {status['last_activity'] or 'never'}")
    click.echo(f"Aha! company: {summary['company']} (token {'set' if summary['token_configured'] else 'missing'})")
    for row in entities:
        click.echo(f"  {row['entity_type']:<14} {row['total_count']:>6} cached, last sync {row['last_sync'] or 'never'}")
    if not status["connected"]:
        sys.exit(1)


@cli.group("config")
def config_group() -> None:
    """Read and change cache settings."""


@config_group.command("get")
@click.argument("key", required=False)
@click.pass_context
def config_get(ctx: click.Context, key: str | None) -> None:
    """Show one setting, or all of them."""
    store = _store(ctx)
    try:
        if key is None:
            for k, v in store.get_config().items():
                click.echo(f"{k}={v}")
            return
        value = store.get_config(key)
    finally:
        store.close()
    if value is None:
        click.echo(f"Setting not found: {key}", err=True)
        sys.exit(1)
    click.echo(value)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Change one setting."""
    store = _store(ctx)
    try:
        store.set_config(key, value)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo(f"{key}={value}")


@cli.command()
@click.argument("entity_types", nargs=-1, required=True)
@click.option("--batch-size", type=int, default=None, help="Records per page (default: sync_batch_size setting)")
@click.option("--updated-since", default=None, help="Only records updated after this ISO timestamp")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def sync(
    ctx: click.Context,
    entity_types: tuple[str, ...],
    batch_size: int | None,
    updated_since: str | None,
    as_json: bool,
) -> None:
    """Sync ENTITY_TYPES from Aha! into the cache and wait for completion."""

    progress = _run_job(
        ctx,
        lambda g: g.sync,
        lambda runner: runner.start_sync(entity_types, batch_size=batch_size, updated_since=updated_since),
    )
    _print_progress(progress, as_json)


@cli.command()
@click.argument("entity_types", nargs=-1, required=True)
@click.option("--batch-size", type=int, default=None, help="Entities per batch (default: embedding_batch_size setting)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def embed(ctx: click.Context, entity_types: tuple[str, ...], batch_size: int | None, as_json: bool) -> None:
    """Compute vectors for cached ENTITY_TYPES that have none yet."""

    progress = _run_job(ctx, lambda g: g.embeddings, lambda runner: runner.start_embedding(entity_types, batch_size=batch_size))
    _print_progress(progress, as_json)


@cli.command()
@click.option("--days", type=click.IntRange(min=0), default=7, show_default=True, help="Minimum age of removed jobs")
@click.pass_context
def cleanup(ctx: click.Context, days: int) -> None:
    """Delete finished sync and embedding jobs older than --days."""
    store = _store(ctx)
    removed: dict[str, Any] = {}
    try:
        removed["sync"] = store.cleanup_old_jobs("sync", days)
        removed["embedding"] = store.cleanup_old_jobs("embedding", days)
    finally:
        store.close()
    click.echo(f"Removed {removed['sync']} sync jobs and {removed['embedding']} embedding jobs older than {days} days")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
