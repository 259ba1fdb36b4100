"""CLI for DayFlow calendar sync: connect, inspect and bootstrap."""

from __future__ import annotations

import asyncio
import secrets
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click
import httpx

from dayflow import __version__
from dayflow.calendar_client import DEFAULT_TIMEOUT_SECONDS, GoogleCalendarClient
from dayflow.config import CONFIG_FILENAME, ConfigError, DayflowConfig, load_config
from dayflow.core.logging import configure_logging
from dayflow.db import Database, ensure_schema
from dayflow.errors import CalendarSyncError
from dayflow.token_store import TokenStore
from dayflow.tokens import GoogleOAuthClient, TokenManager


def _oauth_client(config: DayflowConfig, http: httpx.AsyncClient) -> GoogleOAuthClient:
    return GoogleOAuthClient(
        client_id=config.google.client_id,
        client_secret=config.google.client_secret,
        redirect_uri=config.google.redirect_uri,
        scopes=config.google.scopes,
        http_client=http,
    )


@asynccontextmanager
async def _session(
    config: DayflowConfig,
) -> AsyncIterator[tuple[TokenManager, GoogleCalendarClient]]:
    database = Database(config.database)
    pool = await database.connect()
    try:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as http:
            tokens = TokenManager(config.user_id, TokenStore(pool), _oauth_client(config, http))
            await tokens.load()
            yield tokens, GoogleCalendarClient(tokens, http)
    finally:
        await database.close()


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except CalendarSyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(CONFIG_FILENAME),
    show_default=True,
    help="Path to dayflow.toml (or the directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """DayFlow: Google Calendar sync for recurring tasks."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.file) if config.logging.file else None,
        user_id=config.user_id,
    )
    ctx.obj = config


@cli.command("auth-url")
@click.option("--state", default=None, help="OAuth state value (random when omitted)")
@click.pass_obj
def auth_url(config: DayflowConfig, state: str | None) -> None:
    """Print the Google consent URL to start the OAuth flow."""

    async def _main() -> None:
        async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS) as http:
            oauth = _oauth_client(config, http)
            click.echo(oauth.authorization_url(state or secrets.token_urlsafe(16)))

    _run(_main())


@cli.command()
@click.argument("code")
@click.pass_obj
def connect(config: DayflowConfig, code: str) -> None:
    """Exchange an authorization CODE for tokens and store them."""

    async def _main() -> None:
        async with _session(config) as (tokens, _client):
            record = await tokens.exchange_authorization_code(code)
            click.echo(f"Connected. Access token valid until {record.expires_at.isoformat()}")

    _run(_main())


@cli.command()
@click.pass_obj
def disconnect(config: DayflowConfig) -> None:
    """Delete the stored Google tokens."""

    async def _main() -> None:
        async with _session(config) as (tokens, _client):
            if await tokens.disconnect():
                click.echo("Disconnected from Google Calendar")
            else:
                click.echo("No stored tokens")

    _run(_main())


@cli.command()
@click.pass_obj
def status(config: DayflowConfig) -> None:
    """Show connection state and sync settings."""

    async def _main() -> None:
        async with _session(config) as (tokens, _client):
            record = tokens.record
            click.echo(f"{'User':<14} {config.user_id}")
            click.echo(f"{'State':<14} {tokens.state.value}")
            if record is not None:
                click.echo(f"{'Expires at':<14} {record.expires_at.isoformat()}")
                click.echo(f"{'Scope':<14} {record.scope or '-'}")
            click.echo(f"{'Auto sync':<14} {'on' if config.sync.auto_sync else 'off'}")
            click.echo(f"{'Calendar':<14} {config.sync.calendar_id}")
            click.echo(f"{'Timezone':<14} {config.timezone}")

    _run(_main())


@cli.command()
@click.pass_obj
def calendars(config: DayflowConfig) -> None:
    """List the calendars of the connected account."""

    async def _main() -> None:
        async with _session(config) as (_tokens, client):
            items = await client.list_calendars()
            if not items:
                click.echo("No calendars found")
                return
            click.echo(f"{'ID':<50} {'Name'}")
            click.echo("-" * 80)
            for item in items:
                marker = " (primary)" if item["primary"] else ""
                click.echo(f"{item['id']:<50} {item['summary']}{marker}")

    _run(_main())


@cli.command("init-db")
@click.pass_obj
def init_db(config: DayflowConfig) -> None:
    """Create the token and completion tables."""

    async def _main() -> None:
        database = Database(config.database)
        pool = await database.connect()
        try:
            await ensure_schema(pool)
        finally:
            await database.close()
        click.echo("Schema ready")

    _run(_main())
