"""CLI for coup: run the API, migrate the database, drive syncs."""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar
from uuid import UUID

import click
import httpx
import uvicorn

from coup import __version__
from coup.calendar.orchestrator import SETTINGS_PATH, SyncOrchestrator
from coup.calendar.session import SessionContext
from coup.config import ConfigError, CoupConfig, load_config
from coup.core.logging import configure_logging
from coup.db import Database

logger = logging.getLogger(__name__)

_MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
_T = TypeVar("_T")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to coup.toml (defaults to $COUP_CONFIG or ./coup.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """coup: Google Calendar reconciliation for team schedules."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.name,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind")
@click.pass_obj
def serve(config: CoupConfig, host: str) -> None:
    """Run the HTTP API."""
    from coup.api.app import create_app

    click.echo(f"Serving coup API on {host}:{config.port}")
    uvicorn.run(create_app(config), host=host, port=config.port, log_config=None)


@cli.command()
@click.option("--sql", is_flag=True, help="Print the SQL instead of applying it")
def migrate(sql: bool) -> None:
    """Upgrade the database schema to the latest revision."""
    from coup.migrations import print_migration_sql, run_migrations

    db_url = Database.from_env().url
    if sql:
        print_migration_sql(db_url)
        return
    run_migrations(db_url)
    click.echo("Database is up to date.")


def _run_with_orchestrator(
    config: CoupConfig,
    member_id: UUID,
    token: str,
    action: Callable[[SyncOrchestrator, httpx.AsyncClient], Awaitable[_T]],
) -> _T:
    async def _main() -> _T:
        async with httpx.AsyncClient(
            base_url=config.resolved_api_base_url,
            timeout=config.calendar.request_timeout_s * 2,
        ) as client:
            orchestrator = SyncOrchestrator(
                session=SessionContext.with_static_token(member_id, token),
                api_client=client,
                tuning=config.sync,
                timezone=config.calendar.timezone,
            )
            return await action(orchestrator, client)

    return asyncio.run(_main())


@cli.command()
@click.argument("member_id", type=click.UUID)
@click.option("--token", envvar="GOOGLE_ACCESS_TOKEN", required=True, help="Google access token")
@click.option("--calendar", "calendar_id", default=None, help="Connect this calendar first")
@click.pass_obj
def sync(config: CoupConfig, member_id: UUID, token: str, calendar_id: str | None) -> None:
    """Run one routine sync for MEMBER_ID through the API."""

    async def _sync(orchestrator: SyncOrchestrator, client: httpx.AsyncClient):
        if calendar_id is not None:
            response = await client.post(
                SETTINGS_PATH,
                json={"memberId": str(member_id), "calendarId": calendar_id},
            )
            response.raise_for_status()
        return await orchestrator.sync_calendar()

    stats = _run_with_orchestrator(config, member_id, token, _sync)
    if stats is None:
        click.echo("Sync did not run (disabled, no token, or failed; see logs).", err=True)
        sys.exit(1)
    click.echo(
        f"fetched={stats.fetched} created={stats.created} "
        f"updated={stats.updated} deleted={stats.deleted}"
    )


@cli.command()
@click.argument("member_id", type=click.UUID)
@click.option("--from", "start", required=True, help="First month to backfill (YYYY-MM)")
@click.option("--token", envvar="GOOGLE_ACCESS_TOKEN", required=True, help="Google access token")
@click.pass_obj
def backfill(config: CoupConfig, member_id: UUID, start: str, token: str) -> None:
    """Backfill MEMBER_ID's calendar month by month back to --from."""
    match = _MONTH_PATTERN.fullmatch(start.strip())
    if match is None:
        raise click.BadParameter("expected YYYY-MM", param_hint="--from")
    start_year, start_month = int(match.group(1)), int(match.group(2))

    async def _backfill(orchestrator: SyncOrchestrator, client: httpx.AsyncClient):
        return await orchestrator.sync_history(start_year, start_month)

    progress = _run_with_orchestrator(config, member_id, token, _backfill)
    click.echo(
        f"months={progress.completed_months}/{progress.total_months} "
        f"events={progress.total_events}"
    )
    for failure in progress.failed_months:
        click.echo(f"  failed: {failure}")
    if progress.error:
        click.echo(f"Backfill error: {progress.error}", err=True)
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
