"""Command-line entry point for calsync."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from calsync.config import CONFIG_FILENAME, CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.db import Database
from calsync.errors import SyncError

logger = logging.getLogger(__name__)

# Default directory containing calsync.toml
DEFAULT_CONFIG_DIR = Path(".")


def _load(config_dir: Path) -> CalsyncConfig:
    """Load calsync.toml, falling back to defaults when the directory has none."""
    if not (config_dir / CONFIG_FILENAME).exists():
        logger.info("No %s in %s, using defaults", CONFIG_FILENAME, config_dir)
        return CalsyncConfig()
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


def _database(config: CalsyncConfig) -> Database:
    return Database.from_config(config.db)


config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help=f"Directory containing {CONFIG_FILENAME}",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calsync: CalDAV sync engine with live push notifications."""


@cli.command()
@config_option
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Bind port (overrides config)")
def serve(config_dir: Path, host: str | None, port: int | None) -> None:
    """Run the REST API and push channel under uvicorn."""
    import uvicorn

    from calsync.api.app import create_app

    config = _load(config_dir)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)

    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.host,
        port=port or config.port,
        log_config=None,
        ws_ping_interval=config.push.heartbeat_interval_s,
        ws_ping_timeout=config.push.heartbeat_timeout_s,
    )


@cli.command()
@config_option
@click.argument("calendar_id", type=int)
@click.option("--push", "push_first", is_flag=True, help="Push unsynced local events first")
def sync(config_dir: Path, calendar_id: int, push_first: bool) -> None:
    """Synchronize one calendar with its remote collection."""
    config = _load(config_dir)
    configure_logging(config.logging.level, config.logging.format)
    try:
        asyncio.run(_sync_once(config, calendar_id, push_first=push_first))
    except SyncError as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)


async def _sync_once(config: CalsyncConfig, calendar_id: int, *, push_first: bool) -> None:
    from calsync.notifications.ledger import NotificationLedger
    from calsync.sync.engine import SyncEngine
    from calsync.sync.remote import CalDAVCollection, StaticCredentialProvider
    from calsync.sync.sequence import SequenceManager
    from calsync.sync.service import CalendarSyncService
    from calsync.sync.store import PostgresEventStore

    db = _database(config)
    pool = await db.connect()
    remote = CalDAVCollection(request_timeout_s=config.sync.request_timeout_s)
    try:
        store = PostgresEventStore(pool)
        engine = SyncEngine(
            store=store,
            remote=remote,
            sequences=SequenceManager(store),
            credentials=StaticCredentialProvider.from_config(config.remote),
            config=config.sync,
        )
        service = CalendarSyncService(engine=engine, store=store, ledger=NotificationLedger(pool))
        if push_first:
            pushed = await engine.push_pending(calendar_id)
            click.echo(f"Pushed {len(pushed.pushed)} event(s), {len(pushed.failed)} failed")
        change_set = await service.sync_calendar(calendar_id)
        counts = change_set.counts()
        click.echo(
            f"Calendar {calendar_id} ({change_set.mode}): {counts['added']} added, "
            f"{counts['modified']} modified, {counts['deleted']} deleted, "
            f"{len(change_set.conflicts)} conflict(s)"
        )
    finally:
        await remote.shutdown()
        await db.close()


@cli.command()
@config_option
@click.option("--provision", is_flag=True, help="Create the database first if it is missing")
def migrate(config_dir: Path, provision: bool) -> None:
    """Apply database migrations to head."""
    from calsync.migrations import run_migrations

    config = _load(config_dir)
    configure_logging(config.logging.level, config.logging.format)
    db = _database(config)
    if provision:
        asyncio.run(db.provision())
    run_migrations(db.dsn(), chain="all", schema=config.db.schema)
    click.echo(f"Database {config.db.name} is at head")


@cli.command("cleanup-notifications")
@config_option
@click.option("--days", type=int, default=30, show_default=True, help="Keep this many days")
def cleanup_notifications(config_dir: Path, days: int) -> None:
    """Delete notifications older than --days."""
    config = _load(config_dir)
    configure_logging(config.logging.level, config.logging.format)
    removed = asyncio.run(_cleanup(config, days))
    click.echo(f"Removed {removed} notification(s)")


async def _cleanup(config: CalsyncConfig, days: int) -> int:
    from calsync.notifications.ledger import NotificationLedger

    db = _database(config)
    pool = await db.connect()
    try:
        return await NotificationLedger(pool).cleanup_older_than(days)
    finally:
        await db.close()


def main() -> None:
    cli()
