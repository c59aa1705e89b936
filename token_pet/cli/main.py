"""
CLI interface for token-pet.

Provides the sync, leaderboard and autosync commands.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from token_pet.config.loader import (
    LOCK_FILENAME,
    SYNC_LOG_FILENAME,
    get_config_path,
    get_home_dir,
    load_config,
    resolve_credentials,
    set_supabase_value,
)
from token_pet.core.auto_sync import AutoSyncScheduler
from token_pet.core.launcher import SubprocessLauncher
from token_pet.core.leaderboard import collect_leaderboard
from token_pet.core.ranking import DEFAULT_LIMIT, MAX_LIMIT, MIN_LIMIT, LeaderboardQuery, Period, SortField
from token_pet.core.sync_log import ROOT_LOGGER, configure_sync_log
from token_pet.core.sync_pipeline import SyncReport, run_background_sync, run_sync
from token_pet.core.usage_reader import UsageReader, is_valid_date
from token_pet.cli.leaderboard_view import render_leaderboard
from token_pet.sdk.supabase_client import SupabaseClient
from token_pet.storage.lock_store import JsonFileLockStore
from token_pet.storage.models import animal_label
from token_pet.storage.pet_store import PetStore

app = typer.Typer()
autosync_app = typer.Typer(help="Manage automatic sync settings and status.")
app.add_typer(autosync_app, name="autosync")
console = Console()

EXIT_CODE_SUCCESS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(verbose: bool) -> None:
    """Send package logs to stderr; DEBUG with --verbose, warnings otherwise."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler = next((h for h in logger.handlers if isinstance(h, RichHandler)), None)
    if handler is None:
        handler = RichHandler(console=Console(stderr=True), show_path=False)
        logger.addHandler(handler)
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _build_scheduler(home: Path) -> AutoSyncScheduler:
    return AutoSyncScheduler(
        load_settings=lambda: load_config(get_config_path(home)).supabase,
        lock_store=JsonFileLockStore(home / LOCK_FILENAME),
        launcher=SubprocessLauncher(),
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """token-pet CLI."""
    if ctx.invoked_subcommand is None:
        console.print("token-pet - Use --help to see available commands")


@app.command()
def sync(
    start_date: Optional[str] = typer.Option(
        None, "--start-date", help="Start date for token usage sync (YYYY-MM-DD)"
    ),
    end_date: Optional[str] = typer.Option(
        None, "--end-date", help="End date for token usage sync (YYYY-MM-DD)"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Preview sync without making changes"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show detailed output"
    ),
    supabase_url: Optional[str] = typer.Option(
        None, "--supabase-url", help="Supabase project URL"
    ),
    supabase_api_key: Optional[str] = typer.Option(
        None, "--supabase-api-key", help="Supabase anonymous API key"
    ),
    background: bool = typer.Option(
        False, "--background", hidden=True, help="Run as the auto sync worker"
    ),
):
    """
    Sync pet data and token usage to Supabase.

    First sync covers the pet's whole life; later syncs start the day after
    the last synced day. Explicit dates override both.
    """
    _configure_logging(verbose)
    home = get_home_dir()

    for label, value in (("start", start_date), ("end", end_date)):
        if value and not is_valid_date(value):
            console.print(f"[red]Invalid {label} date format. Use YYYY-MM-DD format.[/]")
            sys.exit(EXIT_CODE_FAIL)

    def _run() -> int:
        return _execute_sync(home, start_date, end_date, dry_run, verbose, supabase_url, supabase_api_key)

    if not background:
        sys.exit(_run())

    configure_sync_log(home / SYNC_LOG_FILENAME)
    try:
        exit_code = run_background_sync(JsonFileLockStore(home / LOCK_FILENAME), _run)
    except Exception:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(exit_code)


def _execute_sync(
    home: Path,
    start_date: Optional[str],
    end_date: Optional[str],
    dry_run: bool,
    verbose: bool,
    supabase_url: Optional[str],
    supabase_api_key: Optional[str],
) -> int:
    try:
        settings = load_config(get_config_path(home)).supabase
        credentials = resolve_credentials(settings, supabase_url, supabase_api_key)
        if not credentials.is_complete:
            console.print("[red]Supabase configuration missing[/]")
            console.print("Set SUPABASE_URL and SUPABASE_ANON_KEY environment variables")
            console.print("or use --supabase-url and --supabase-api-key options")
            return EXIT_CODE_FAIL

        state = PetStore(home).load_state()
        if state is None:
            console.print("[red]No pet data found. Please create a pet first.[/]")
            return EXIT_CODE_FAIL

        if verbose:
            console.print(f"Loaded pet data: {state.pet_name} ({state.animal_type})")

        with SupabaseClient(credentials.url, credentials.api_key) as client:
            report = run_sync(
                client,
                UsageReader(),
                state,
                start_date=start_date,
                end_date=end_date,
                dry_run=dry_run,
            )
    except Exception as e:
        console.print(f"[red]Sync failed:[/] {str(e)}")
        return EXIT_CODE_FAIL

    return _display_sync_report(report, verbose)


def _display_sync_report(report: SyncReport, verbose: bool) -> int:
    """Print the outcome of a sync run and return the exit code."""
    if verbose:
        console.print(
            f"Sync date range: {report.sync_range.start_date} to {report.sync_range.end_date}"
        )
        console.print(f"Found {len(report.records_read)} token usage records")

    if report.dry_run:
        pet = report.pet_record
        console.print("[bold]DRY RUN MODE[/bold] - No data will be synced")
        console.print(f"Pet: {pet.pet_name} ({animal_label(pet.animal_type)})")
        console.print(f"Records to sync: {len(report.records_read)}")
        if report.records_read:
            console.print("Sample records:")
            for record in report.records_read[:3]:
                console.print(
                    f"  {record.usage_date}: {record.total_tokens} tokens (${record.cost_usd})"
                )
        return EXIT_CODE_SUCCESS

    if report.already_synced:
        console.print("[green]✓[/] All records are already synced")
        return EXIT_CODE_SUCCESS

    result = report.result
    if result.success:
        console.print(f"[green]✓[/] Successfully synced {result.processed} records")
        return EXIT_CODE_SUCCESS

    console.print(f"[red]Sync completed with errors:[/] {result.message}")
    if result.errors:
        console.print("Errors:")
        for error in result.errors:
            console.print(f"  {error}")
    return EXIT_CODE_FAIL


@app.command()
def leaderboard(
    period: Period = typer.Option(
        Period.TODAY, "--period", help="Time period for rankings"
    ),
    sort: SortField = typer.Option(
        SortField.TOKENS, "--sort", help="Sort by field"
    ),
    limit: int = typer.Option(
        DEFAULT_LIMIT, "--limit", min=MIN_LIMIT, max=MAX_LIMIT, help="Number of results"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show detailed output"
    ),
    supabase_url: Optional[str] = typer.Option(
        None, "--supabase-url", help="Supabase project URL"
    ),
    supabase_api_key: Optional[str] = typer.Option(
        None, "--supabase-api-key", help="Supabase anonymous API key"
    ),
):
    """
    Display pet leaderboard rankings.

    Falls back to local pet and graveyard data when Supabase is
    unavailable; cost data is not shown in that mode.
    """
    _configure_logging(verbose)
    home = get_home_dir()

    try:
        settings = load_config(get_config_path(home)).supabase
        credentials = resolve_credentials(settings, supabase_url, supabase_api_key)
        query = LeaderboardQuery(period=period, sort_by=sort, limit=limit)

        client = None
        if credentials.is_complete:
            client = SupabaseClient(credentials.url, credentials.api_key)
        try:
            view = collect_leaderboard(client, PetStore(home), query)
        finally:
            if client is not None:
                client.close()

        render_leaderboard(console, view)
    except Exception as e:
        console.print(f"[red]Leaderboard command failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@autosync_app.callback(invoke_without_command=True)
def autosync(ctx: typer.Context):
    """Show auto sync status when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        autosync_status()


@autosync_app.command("status")
def autosync_status():
    """Show auto sync configuration and run state."""
    home = get_home_dir()
    try:
        status = _build_scheduler(home).status()
    except Exception as e:
        console.print(f"[red]Error reading auto sync status:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    hours = round(status.sync_interval_minutes / 60, 1)
    console.print("\n[bold]Auto Sync Status[/bold]\n")
    console.print(f"Auto Sync: {'[green]Enabled[/]' if status.auto_sync_enabled else '[red]Disabled[/]'}")
    console.print(f"Sync Interval: {status.sync_interval_minutes} minutes ({hours} hours)")
    console.print(
        f"Supabase Config: {'[green]Configured[/]' if status.backend_configured else '[red]Not configured[/]'}"
    )

    if not status.backend_configured:
        console.print("\n[yellow]Supabase configuration incomplete. Auto sync will not work.[/]")
        console.print(f"Set supabase.url and supabase.api_key in {get_config_path(home)}")
        return

    console.print(f"\nSync Status: {'In Progress' if status.sync_in_progress else 'Ready'}")
    if status.last_sync_time is not None:
        elapsed_hours = (datetime.now(timezone.utc) - status.last_sync_time).total_seconds() / 3600
        local_time = status.last_sync_time.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        console.print(f"Last Sync: {local_time} ({elapsed_hours:.1f} hours ago)")
        console.print(f"Next Sync: {'Due now' if status.sync_due else 'Scheduled'}")
        if status.sync_due and status.auto_sync_enabled:
            console.print("\nAuto sync is due. It will trigger on the next status line refresh.")
    else:
        console.print("Last Sync: Never")
        if status.auto_sync_enabled:
            console.print("\nFirst auto sync will trigger on the next status line refresh.")

    if not status.auto_sync_enabled:
        console.print("\nEnable auto sync with: token-pet autosync enable")


@autosync_app.command("enable")
def autosync_enable():
    """Enable auto sync."""
    _set_setting("auto_sync", True)
    console.print("[green]✓[/] Auto sync enabled.")


@autosync_app.command("disable")
def autosync_disable():
    """Disable auto sync."""
    _set_setting("auto_sync", False)
    console.print("[green]✓[/] Auto sync disabled.")


@autosync_app.command("interval")
def autosync_interval(
    minutes: int = typer.Argument(..., help="Sync interval in minutes"),
):
    """Set the auto sync interval in minutes."""
    if minutes <= 0:
        console.print("[red]Invalid interval. Please specify a positive number of minutes.[/]")
        sys.exit(EXIT_CODE_FAIL)
    _set_setting("sync_interval", minutes)
    console.print(f"[green]✓[/] Auto sync interval set to {minutes} minutes ({round(minutes / 60, 1)} hours).")


@autosync_app.command("reset")
def autosync_reset():
    """Clear a stuck in-progress sync mark."""
    home = get_home_dir()
    configure_sync_log(home / SYNC_LOG_FILENAME)
    try:
        _build_scheduler(home).reset_sync_status()
    except Exception as e:
        console.print(f"[red]Error resetting sync status:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] Auto sync status has been reset.")


@autosync_app.command("check", hidden=True)
def autosync_check():
    """Trigger a background sync if one is due. Never fails."""
    home = get_home_dir()
    configure_sync_log(home / SYNC_LOG_FILENAME)
    _build_scheduler(home).check_and_trigger()


def _set_setting(key: str, value) -> None:
    try:
        set_supabase_value(key, value, get_config_path(get_home_dir()))
    except Exception as e:
        console.print(f"[red]Error updating configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
