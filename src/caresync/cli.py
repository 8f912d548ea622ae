"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .auth import authorize_user_interactively
from .config import create_example_config, load_settings
from .database import DatabaseManager
from .locks import AdvisoryLock
from .services.base import AuthenticationError, CalendarServiceError
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=log_format or "%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
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


def _require_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nSet these environment variables or run [bold]caresync config create[/bold].",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """CareSync - keep appointments and bills in the family's Google Calendar."""
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
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run the HTTP trigger server with the background scheduler."""
    try:
        import uvicorn
        uvicorn.run("caresync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings = ctx.obj['settings']
    DatabaseManager(settings).init_db()
    console.print(f"[green]✓ Database ready[/green] at {settings.database_url}")


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='User to connect')
@click.pass_context
def connect(ctx, user_id):
    """Authorize Google Calendar access for a user in the browser."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    try:
        credential = authorize_user_interactively(settings, db_manager, user_id)
    except Exception as e:
        console.print(f"[red]Authorization failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Connected[/green] user {credential.user_id}")
    if not credential.refresh_token:
        console.print("[yellow]⚠️  No refresh token was granted; the connection will expire[/yellow]")


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='User to sync')
@click.option('--full', is_flag=True, help='Queue every item before pushing')
@click.option('--no-pull', is_flag=True, help='Only push local changes')
@click.option('--calendar', help='Override the target calendar id')
@async_command
async def sync(ctx, user_id, full, no_pull, calendar):
    """Run one sync cycle for a user now."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with SyncEngine(settings) as engine:
            lock = AdvisoryLock(engine.db_manager, lease_seconds=settings.sync_config.lock_lease_seconds)
            async with lock.hold(user_id) as acquired:
                if not acquired:
                    console.print(f"[yellow]A sync for {user_id} is already running; try again later[/yellow]")
                    sys.exit(1)
                console.print("🚀 Synchronizing...")
                summary = await engine.sync_user(
                    user_id, pull_remote=not no_pull, force_full=full, calendar_id=calendar
                )
    except AuthenticationError as e:
        console.print(f"[red]Google authorization is no longer valid ({e.code}).[/red]")
        console.print(f"Run [bold]caresync connect --user {user_id}[/bold] to reconnect.")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    _display_summary(summary)


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='User to inspect')
@click.pass_context
def status(ctx, user_id):
    """Show a user's Google Calendar connection status."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    with db_manager.get_session() as session:
        integration = db_manager.get_integration_status(session, user_id)

    table = Table(show_header=False, title=f"Integration: {user_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    if not integration.connected:
        table.add_row("Connected", "[red]✗ No[/red]")
    else:
        table.add_row("Connected", "[yellow]⚠️  Needs re-auth[/yellow]" if integration.needs_reauth else "[green]✓ Yes[/green]")
        table.add_row("Calendar", integration.calendar_id or "-")
        table.add_row("Managed calendar", integration.managed_calendar_id or "-")
        table.add_row("Last pull", integration.last_pulled_at.isoformat() if integration.last_pulled_at else "never")
        table.add_row("Last push", integration.last_synced_at.isoformat() if integration.last_synced_at else "never")
        table.add_row("Pending items", str(integration.pending_items))
        table.add_row("Errored items", str(integration.error_items))
    console.print(table)


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='User whose items to queue')
@click.pass_context
def queue(ctx, user_id):
    """Mark every item of a user pending for push."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    with db_manager.get_session() as session:
        credential = db_manager.get_credential(session, user_id)
        if credential is None:
            console.print(f"[red]User {user_id} has no Google connection[/red]")
            sys.exit(1)
        count = db_manager.queue_sync_for_user(session, user_id, credential.calendar_id)
        session.commit()
    console.print(f"[green]✓ Queued {count} items[/green]")


@cli.command('ensure-calendar')
@click.option('--user', '-u', 'user_id', required=True, help='User to provision')
@async_command
async def ensure_calendar(ctx, user_id):
    """Resolve or create the user's managed calendar and share it."""
    settings = ctx.obj['settings']
    _require_settings(settings)

    try:
        async with SyncEngine(settings) as engine:
            result = await engine.provision_managed_calendar(user_id)
    except CalendarServiceError as e:
        console.print(f"[red]Failed to provision calendar: {e.message}[/red]")
        sys.exit(1)

    verb = "Created" if result.created else "Using"
    console.print(f"[green]✓ {verb}[/green] managed calendar {result.calendar_id}")


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
        console.print("Please edit the file with your OAuth client.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


def _display_summary(summary):
    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Pushed", justify="center")
    table.add_column("Pulled", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Conflicts", justify="center")
    table.add_column("Unchanged", justify="center")
    table.add_row(
        str(summary.pushed), str(summary.pulled), str(summary.deleted),
        str(summary.conflicts), str(summary.skipped),
    )
    console.print(table)

    if summary.errors:
        console.print(Panel(
            "\n".join(
                f"• ({error.kind or 'error'}) {error.item_id or error.event_id or '-'}: {error.message}"
                for error in summary.errors
            ),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def main():
    cli()


if __name__ == '__main__':
    main()
