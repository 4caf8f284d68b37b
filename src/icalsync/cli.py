"""Command-line interface for cron-driven syncs and account administration."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import load_settings, create_example_config
from .database import DatabaseManager
from .models import AccountSyncResult, SyncDirection, SyncRunReport
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level))
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


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """icalsync - two-way CalDAV calendar synchronization.

    Reconciles each account's events with its remote CalDAV calendar.
    Run `icalsync sync` from cron or trigger it over HTTP with `icalsync serve`.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the database tables."""
    settings = ctx.obj['settings']
    DatabaseManager(settings).init_db()
    console.print(f"[green]Database initialized at {settings.database_url}[/green]")


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run the HTTP sync trigger."""
    try:
        import uvicorn
        uvicorn.run("icalsync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--user-id', '-u', help='Sync only this account')
@click.option('--respect-interval', is_flag=True,
              help='Skip accounts whose sync interval has not elapsed')
@async_command
async def sync(ctx, user_id, respect_interval):
    """Synchronize all auto-sync accounts (or a single one)."""
    settings = ctx.obj['settings']
    sync_engine = SyncEngine(settings)

    try:
        await sync_engine.initialize()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task("Synchronizing...", total=None)
            if user_id:
                results = [await sync_engine.sync_account(user_id)]
                report = SyncRunReport(results=results, synced_users=1)
            else:
                report = await sync_engine.run_scheduled(respect_interval=respect_interval)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    logger.info("sync_completed", synced_users=report.synced_users, failed_users=report.failed_users)
    _display_sync_results(report.results)
    if report.failed_users:
        sys.exit(1)


@cli.command('test-connection')
@click.argument('user_id')
@async_command
async def test_connection(ctx, user_id):
    """Check an account's credentials by listing its calendars."""
    settings = ctx.obj['settings']
    sync_engine = SyncEngine(settings)
    await sync_engine.initialize()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True
    ) as progress:
        progress.add_task("Testing connection...", total=None)
        result = await sync_engine.test_connection(user_id)

    if not result.success:
        console.print(Panel(f"[red]{result.message}[/red]", title="Connection Test", border_style="red"))
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta", title=result.message)
    table.add_column("Calendar", style="cyan")
    table.add_column("URL", style="dim")
    for calendar in result.calendars:
        table.add_row(calendar.name, calendar.href)
    console.print(table)


@cli.group()
def accounts():
    """Manage CalDAV accounts."""
    pass


@accounts.command('add')
@click.option('--user-id', '-u', required=True, help='Internal user id')
@click.option('--username', required=True, help='CalDAV username (Apple ID)')
@click.option('--password', prompt=True, hide_input=True, help='App-specific password')
@click.option('--caldav-url', help='CalDAV base URL (defaults to CALDAV_SERVER_URL)')
@click.option('--direction', type=click.Choice([d.value for d in SyncDirection]),
              default=SyncDirection.BIDIRECTIONAL.value, show_default=True, help='Sync direction')
@click.option('--interval', type=int, help='Auto-sync interval in minutes')
@click.option('--auto-sync/--no-auto-sync', default=True, help='Include in scheduled syncs')
@click.pass_context
def add_account(ctx, user_id, username, password, caldav_url, direction, interval, auto_sync):
    """Store credentials and sync settings for an account."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    with db_manager.get_session() as session:
        credential = db_manager.save_credential(session, user_id, username, password, caldav_url)
        db_manager.update_sync_state(
            session,
            user_id,
            apple_enabled=True,
            auto_sync_enabled=auto_sync,
            sync_direction=SyncDirection(direction),
            sync_interval_minutes=interval,
        )
    logger.info("account_saved", user_id=user_id, caldav_url=credential.caldav_url)
    console.print(f"[green]Account {user_id} saved ({credential.home_url})[/green]")


@accounts.command('list')
@click.pass_context
def list_accounts(ctx):
    """List configured accounts."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    with db_manager.get_session() as session:
        credentials = db_manager.list_credentials(session)
        states = {s.user_id: s for s in db_manager.list_sync_states(session)}

    if not credentials:
        console.print("[yellow]No accounts configured. Use 'icalsync accounts add'.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Accounts")
    table.add_column("User", style="cyan")
    table.add_column("Username")
    table.add_column("Server", style="dim")
    table.add_column("Direction")
    table.add_column("Auto-sync", justify="center")
    for credential in credentials:
        state = states.get(credential.user_id)
        table.add_row(
            credential.user_id,
            credential.username,
            credential.caldav_url,
            state.sync_direction.value if state else "-",
            "✓" if state and state.apple_enabled and state.auto_sync_enabled else "✗",
        )
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show per-account sync state and event counts."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    with db_manager.get_session() as session:
        states = db_manager.list_sync_states(session)
        counts = {s.user_id: db_manager.count_events_by_status(session, s.user_id) for s in states}

    if not states:
        console.print("[yellow]No accounts configured.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Status")
    table.add_column("User", style="cyan")
    table.add_column("Calendar")
    table.add_column("Last Sync")
    table.add_column("Last Attempt")
    table.add_column("Synced", justify="center")
    table.add_column("Pending", justify="center")
    table.add_column("Conflict", justify="center", style="yellow")
    table.add_column("Error", justify="center", style="red")
    table.add_column("Last Error", style="red")
    for state in states:
        count = counts[state.user_id]
        table.add_row(
            state.user_id,
            state.selected_calendar_name or "-",
            state.last_sync_time.strftime('%Y-%m-%d %H:%M') if state.last_sync_time else "never",
            state.last_sync_attempt.strftime('%Y-%m-%d %H:%M') if state.last_sync_attempt else "never",
            str(count['synced']),
            str(count['pending']),
            str(count['conflict']),
            str(count['error']),
            state.last_sync_error or "",
        )
    console.print(table)


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
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


def _display_sync_results(results):
    """Display per-account sync results."""
    if not results:
        console.print("[yellow]No accounts due for sync[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("User", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Calendar")
    table.add_column("Fetched", justify="center")
    table.add_column("Pushed", justify="center")
    table.add_column("Error", style="red")

    for result in results:
        table.add_row(
            result.user_id,
            "[green]✓[/green]" if result.status == 'success' else "[red]✗[/red]",
            result.calendar or "-",
            _fetch_summary(result),
            _push_summary(result),
            result.error or "",
        )
    console.print(table)


def _fetch_summary(result: AccountSyncResult) -> str:
    if result.fetch is None:
        return "-"
    if result.fetch.skipped_unchanged:
        return "unchanged"
    return f"{result.fetch.upserted}/{result.fetch.received}"


def _push_summary(result: AccountSyncResult) -> str:
    if result.push is None:
        return "-"
    push = result.push
    summary = f"{push.synced}/{push.attempted}"
    if push.conflicts:
        summary += f" ({push.conflicts} conflicts)"
    return summary


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
