"""CLI for calsync: run the API server and one-shot maintenance passes."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from calsync import __version__
from calsync.config import CONFIG_FILENAME, CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.db import Database
from calsync.services import connect_services
from calsync.stores.schema import ensure_schema
from calsync.sync.results import BatchResult

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")


def _load(config_dir: Path) -> CalsyncConfig:
    """Load calsync.toml from *config_dir*, or defaults when the file is absent."""
    if not (config_dir / CONFIG_FILENAME).exists():
        return CalsyncConfig()
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)


def _echo_batch(label: str, result: BatchResult) -> None:
    click.echo(
        f"{label}: processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    for error in result.errors:
        click.echo(f"  - {error}")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help=f"Directory containing {CONFIG_FILENAME}",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """calsync: external calendar synchronization service."""
    config = _load(config_dir)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.name,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides [service].host)")
@click.option("--port", type=int, default=None, help="Port (overrides [service].port)")
@click.pass_obj
def serve(config: CalsyncConfig, host: str | None, port: int | None) -> None:
    """Run the HTTP API with the webhook workers and renewal loop."""
    import uvicorn

    from calsync.api.app import create_app

    bind_host = host or config.host
    bind_port = port or config.port
    click.echo(f"Starting {config.name} on {bind_host}:{bind_port}")
    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_config=None)


@cli.command("renew-webhooks")
@click.pass_obj
def renew_webhooks(config: CalsyncConfig) -> None:
    """Run one webhook renewal pass and exit."""
    result = asyncio.run(_renew_webhooks(config))
    _echo_batch("Webhook renewal", result)
    if not result.ok:
        sys.exit(1)


async def _renew_webhooks(config: CalsyncConfig) -> BatchResult:
    services = await connect_services(config)
    try:
        return await services.renewal.run_once()
    finally:
        await services.stop()


@cli.command("sync-due")
@click.pass_obj
def sync_due(config: CalsyncConfig) -> None:
    """Sync every configuration whose interval has elapsed, then exit."""
    result = asyncio.run(_sync_due(config))
    _echo_batch("Due sync", result)
    if not result.ok:
        sys.exit(1)


async def _sync_due(config: CalsyncConfig) -> BatchResult:
    services = await connect_services(config)
    try:
        return await services.orchestrator.sync_due()
    finally:
        await services.stop()


@cli.command("init-db")
@click.pass_obj
def init_db(config: CalsyncConfig) -> None:
    """Create the database (if missing) and the sync tables."""
    asyncio.run(_init_db(config))
    click.echo(f"Database {config.db.name} is ready")


async def _init_db(config: CalsyncConfig) -> None:
    database = Database.from_config(config.db)
    await database.provision()
    pool = await database.connect()
    try:
        await ensure_schema(pool)
    finally:
        await database.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
