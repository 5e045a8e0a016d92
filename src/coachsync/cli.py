"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import click
import pytz
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import Settings, load_settings, create_example_config
from .database import AccountRepository, DatabaseManager
from .ics import events_from_ics
from .models import CalendarAccount, CalendarEvent, EventProvider, SyncReport
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: Optional[str] = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format or "%(message)s",
    )

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """coachsync - keep coaching events in sync across devices.

    Exchanges local event changes with a sync peer and imports events from
    Google, Outlook and ICS feed accounts.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--limit', '-l', type=int, help='Override the occurrence cap per series')
@click.pass_context
def expand(ctx, path, limit):
    """Expand an ICS file into concrete occurrences."""
    settings: Settings = ctx.obj['settings']
    cap = limit or settings.sync_config.max_occurrences

    try:
        content = Path(path).read_text(encoding='utf-8')
        events = events_from_ics(content, cap=cap, default_tz=settings.timezone)
    except Exception as e:
        console.print(f"[red]Failed to expand {path}: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    _display_occurrences(events, settings.timezone)


@cli.command()
@click.option('--force', '-f', is_flag=True, help='Contact the peer even if a pull ran recently')
@async_command
async def sync(ctx, force):
    """Run one round trip with the sync peer."""
    settings: Settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as engine:
            console.print(f"🔄 Synchronizing with {settings.sync_endpoint}...")
            report = await engine.sync(force=force)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    if report is None:
        console.print("[yellow]A sync was already running; request merged into it[/yellow]")
        return
    logger.info("sync_completed", sent=report.sent, received=report.received, skipped=report.skipped)
    _display_sync_report(report)


@cli.command()
@click.argument('account_id')
@async_command
async def pull(ctx, account_id):
    """Import events of one provider account now."""
    settings: Settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as engine:
            stats = await engine.pull_account(account_id)
    except Exception as e:
        console.print(f"[red]Import failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    if stats is None:
        console.print("[yellow]An import was already running for this account[/yellow]")
        return
    console.print(Panel(
        "\n".join(f"{key.capitalize()}: {value}" for key, value in stats.items()),
        title=f"[green]Account {account_id} imported[/green]",
        border_style="green",
    ))


@cli.group()
@click.pass_context
def accounts(ctx):
    """Provider account management commands."""
    settings: Settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    ctx.obj['accounts'] = AccountRepository(db_manager)


@accounts.command('list')
@click.pass_context
def list_accounts(ctx):
    """List configured provider accounts."""
    repository: AccountRepository = ctx.obj['accounts']
    _display_accounts(repository.list())


@accounts.command('add-ics')
@click.argument('url')
@click.option('--name', '-n', help='Display name')
@click.option('--color', default='#2a9d8f', help='Color assigned to imported events')
@click.option('--no-auto-sync', is_flag=True, help='Only import on demand')
@click.pass_context
def add_ics_account(ctx, url, name, color, no_auto_sync):
    """Register a published ICS feed as an account."""
    repository: AccountRepository = ctx.obj['accounts']
    account = repository.save(CalendarAccount(
        id=str(uuid4()),
        provider=EventProvider.ICS,
        display_name=name,
        color=color,
        ics_url=url,
        auto_sync_enabled=not no_auto_sync,
    ))
    console.print(f"[green]Added ICS account {account.id}[/green]")


@accounts.command('remove')
@click.argument('account_id')
@click.pass_context
def remove_account(ctx, account_id):
    """Delete a provider account."""
    repository: AccountRepository = ctx.obj['accounts']
    if not repository.delete(account_id):
        console.print(f"[red]Account {account_id} not found[/red]")
        sys.exit(1)
    console.print(f"[green]Removed account {account_id}[/green]")


@cli.command()
@click.option('--host', default='127.0.0.1', help='Bind host for HTTP server')
@click.option('--port', default=8000, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run the reference sync peer."""
    settings: Settings = ctx.obj['settings']
    try:
        import uvicorn
        from .server import create_app
        uvicorn.run(create_app(settings), host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


def _display_occurrences(events: List[CalendarEvent], tz) -> None:
    table = Table(title=f"Occurrences ({len(events)})")
    table.add_column("Start", style="cyan")
    table.add_column("End", style="cyan")
    table.add_column("Minutes", justify="right")
    table.add_column("Title", style="bold")
    table.add_column("Id", style="dim")

    for event in sorted(events, key=lambda e: e.start):
        table.add_row(
            _local(event.start, tz),
            _local(event.end, tz),
            str(event.duration_minutes),
            event.title,
            event.ics_uid or "",
        )
    console.print(table)


def _display_sync_report(report: SyncReport) -> None:
    if report.skipped:
        console.print("[dim]Nothing to send and the peer was contacted recently; skipped[/dim]")
        return

    table = Table(title="Sync Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="magenta")
    table.add_row("Sent", str(report.sent))
    table.add_row("Requests", str(report.chunks))
    table.add_row("Received", str(report.received))
    table.add_row("Inserted", str(report.inserted))
    table.add_row("Updated", str(report.updated))
    table.add_row("Unchanged", str(report.unchanged))
    if report.stale:
        table.add_row("Older than local", str(report.stale))
    if report.dropped:
        table.add_row("Malformed", f"[red]{report.dropped}[/red]")
    console.print(table)


def _display_accounts(items: List[CalendarAccount]) -> None:
    if not items:
        console.print("[yellow]No accounts configured[/yellow]")
        return

    table = Table(title="Accounts")
    table.add_column("Id", style="dim")
    table.add_column("Provider", style="cyan")
    table.add_column("Name")
    table.add_column("Auto sync")
    table.add_column("Status")
    table.add_column("Last sync")

    for account in items:
        status = account.status.value
        if account.error_message:
            status = f"[red]{status}: {account.error_message}[/red]"
        table.add_row(
            account.id,
            account.provider.value,
            account.display_name or account.email or account.ics_url or "",
            "✓" if account.auto_sync_enabled else "✗",
            status,
            account.last_sync.strftime('%Y-%m-%d %H:%M') if account.last_sync else "never",
        )
    console.print(table)


def _local(value: Optional[object], tz) -> str:
    if value is None:
        return ""
    return value.astimezone(tz or pytz.UTC).strftime('%Y-%m-%d %H:%M')


def main():
    """Main entry point."""
    cli()


if __name__ == '__main__':
    main()
