"""
Vault Indexer - Command line

Usage:
    vault-indexer run                      # indexer loop + probe server
    vault-indexer run --max-cycles 1       # one pass, then exit
    vault-indexer serve-api --port 3001    # read API
    vault-indexer migrate                  # create missing tables
    vault-indexer cursors list
    vault-indexer cursors reset DepositMade --yes
    vault-indexer dead-letters list --all
    vault-indexer dead-letters replay --limit 50
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, TypeVar

import click

from .config import Settings, configure_logging, get_settings, log_startup_diagnostics
from .db import close_db_pool, init_db_pool
from .indexer.cursor_store import CursorStore
from .indexer.events import EventKind, event_type_key
from .indexer.runner import build_coordinator, build_source, run_indexer
from .indexer.store import MaterializationStore
from .schema import apply_schema

T = TypeVar("T")


def _settings() -> Settings:
    try:
        return get_settings()
    except Exception as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


async def _with_pool(settings: Settings, fn: Callable[[Any], Awaitable[T]]) -> T:
    pool = await init_db_pool(settings)
    try:
        return await fn(pool)
    finally:
        await close_db_pool()


def _resolve_event_type(settings: Settings, name: str) -> str:
    """Accept a full ``<package>::<module>::<Event>`` key or a bare event name."""
    if "::" in name:
        return name
    try:
        kind = EventKind(name)
    except ValueError:
        known = sorted(k.value for k in EventKind)
        raise click.BadParameter(
            f"unknown event '{name}'; expected one of: {', '.join(known)}",
            param_hint="EVENT",
        ) from None
    return event_type_key(settings.VAULT_PACKAGE_ID, settings.VAULT_MODULE_NAME, kind)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this invocation")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Vault event indexer and read API."""
    ctx.ensure_object(dict)
    settings = _settings()
    if log_level:
        settings = settings.model_copy(update={"LOG_LEVEL": log_level.upper()})
    ctx.obj["settings"] = settings
    configure_logging(settings)


# =============================================================================
# Processes
# =============================================================================


@cli.command()
@click.option("--max-cycles", type=int, default=None, help="Stop after this many poll cycles")
@click.pass_context
def run(ctx: click.Context, max_cycles: int | None) -> None:
    """Run the indexer loop until SIGINT/SIGTERM."""
    settings: Settings = ctx.obj["settings"]
    log_startup_diagnostics("vault-indexer (runner)", settings)
    stats = asyncio.run(run_indexer(settings, max_cycles=max_cycles))
    click.echo(
        f"Indexer stopped: cycles={stats.cycles} applied={stats.applied} "
        f"failed={stats.failed_cycles}"
    )


@cli.command("serve-api")
@click.option("--host", default=None, help="Bind host (default: HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: PORT)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
@click.pass_context
def serve_api(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Serve the read API with uvicorn."""
    import uvicorn

    settings: Settings = ctx.obj["settings"]
    log_startup_diagnostics("vault-indexer (api)", settings)
    uvicorn.run(
        "vault_indexer.main:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
        log_config=None,
    )


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Create any missing tables and indexes."""
    settings: Settings = ctx.obj["settings"]
    count = asyncio.run(_with_pool(settings, apply_schema))
    click.echo(f"Schema up to date ({count} statements applied)")


# =============================================================================
# Cursors
# =============================================================================


@cli.group()
def cursors() -> None:
    """Inspect and reset per-event-type cursors."""


@cursors.command("list")
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_context
def cursors_list(ctx: click.Context, limit: int) -> None:
    settings: Settings = ctx.obj["settings"]
    records = asyncio.run(_with_pool(settings, lambda pool: CursorStore(pool).list(limit)))
    if not records:
        click.echo("No cursors stored")
        return
    for record in records:
        click.echo(f"{record.event_type}  {record.position}  updated={record.updated_at}")


@cursors.command("reset")
@click.argument("event")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def cursors_reset(ctx: click.Context, event: str, yes: bool) -> None:
    """Delete a cursor so EVENT is re-read from the beginning."""
    settings: Settings = ctx.obj["settings"]
    key = _resolve_event_type(settings, event)
    if not yes:
        click.confirm(f"Reset cursor {key}? Its events will be re-read", abort=True)
    deleted = asyncio.run(_with_pool(settings, lambda pool: CursorStore(pool).delete(key)))
    click.echo(f"Cursor {key} reset" if deleted else f"No cursor stored for {key}")


# =============================================================================
# Dead letters
# =============================================================================


@cli.group("dead-letters")
def dead_letters() -> None:
    """Inspect and replay events that failed to decode or apply."""


@dead_letters.command("list")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved rows")
@click.option("--json", "as_json", is_flag=True, help="Emit one JSON object per line")
@click.pass_context
def dead_letters_list(ctx: click.Context, limit: int, include_resolved: bool, as_json: bool) -> None:
    settings: Settings = ctx.obj["settings"]
    letters = asyncio.run(
        _with_pool(
            settings,
            lambda pool: MaterializationStore(pool).list_dead_letters(
                limit=limit, include_resolved=include_resolved
            ),
        )
    )
    if not letters:
        click.echo("No dead letters")
        return
    for letter in letters:
        if as_json:
            click.echo(
                json.dumps(
                    {
                        "id": letter.id,
                        "event_type": letter.event_type,
                        "position": str(letter.event.position),
                        "stage": letter.stage,
                        "error_type": letter.error_type,
                        "error_message": letter.error_message,
                        "attempts": letter.attempts,
                        "resolved": letter.resolved_at is not None,
                    }
                )
            )
        else:
            state = "resolved" if letter.resolved_at else f"attempts={letter.attempts}"
            click.echo(
                f"#{letter.id} {letter.event.position} [{letter.stage}] "
                f"{letter.error_type}: {letter.error_message} ({state})"
            )


@dead_letters.command("replay")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option(
    "--max-attempts",
    type=int,
    default=None,
    help="Skip rows already retried this many times (default: no cap)",
)
@click.pass_context
def dead_letters_replay(ctx: click.Context, limit: int, max_attempts: int | None) -> None:
    """Re-decode and re-apply unresolved dead letters, oldest first."""
    settings: Settings = ctx.obj["settings"]

    async def _replay(pool: Any) -> int:
        source = build_source(settings)
        try:
            coordinator = build_coordinator(pool, source, settings)
            return await coordinator.replay_dead_letters(limit=limit, max_attempts=max_attempts)
        finally:
            await source.close()

    replayed = asyncio.run(_with_pool(settings, _replay))
    click.echo(f"Replayed {replayed} dead letters")


if __name__ == "__main__":
    cli()
