"""
Command-line interface for busy-mirror.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from busy_mirror.config import load_config
from busy_mirror.models import DEFAULT_CONFIG
from busy_mirror.models import CalendarSyncError
from busy_mirror.models import ConfigError
from busy_mirror.models import MirrorConfig
from busy_mirror.models import RunReport

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Mirror busy time blocks from source calendars into destination calendars via EDS.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.verbose = verbose


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool, quiet: bool = False) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
        force=True,
    )


def _load_mirror_config() -> MirrorConfig:
    try:
        return load_config(state.config_path)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


def _open_service():
    from busy_mirror.eds_client import EDSCalendarService

    try:
        return EDSCalendarService()
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


def _print_results(report: RunReport) -> None:
    results = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    results.add_column("Destination", overflow="fold")
    results.add_column("Created", justify="right")
    results.add_column("Deleted", justify="right")
    results.add_column("Errors", justify="right")

    for result in report.results:
        error_val = Text(str(result.errors))
        if result.error is not None:
            error_val = Text(result.error.value, style="bold red")
        elif result.errors == 0:
            error_val.append(" ✓", style="green")
        else:
            error_val.stylize("bold red")
        results.add_row(result.destination_id, str(result.created), str(result.deleted), error_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    for result in report.results:
        for issue in result.issues:
            console.print(
                f"  [red]✗[/red] [bold]{issue.kind.value}[/bold] "
                f"[dim]{issue.calendar_id}[/dim]: {issue.message}"
            )


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_DRY_RUN = Annotated[bool, typer.Option("--dry-run", "-n", help="Preview changes without applying")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    look_ahead_days: Annotated[
        int | None,
        typer.Option(
            "--look-ahead-days",
            "-d",
            min=1,
            help="Default look-ahead window in days (overrides config; "
            "per-destination values still win)",
        ),
    ] = None,
    dry_run: _DRY_RUN = False,
    yes: _YES = False,
    quiet: Annotated[
        bool, typer.Option("--quiet", "-q", help="Log warnings and errors only")
    ] = False,
) -> None:
    """Mirror busy time into every configured destination calendar."""
    from busy_mirror.sync import BusyMirror

    _setup_logging(state.verbose, quiet)
    cfg = _load_mirror_config()
    if look_ahead_days is not None:
        cfg.look_ahead_days = look_ahead_days
    cfg.dry_run = dry_run
    cfg.yes = yes

    service = _open_service()

    # -- Info panel ----------------------------------------------------------
    info = Text()
    for dest in cfg.destinations:
        name, account, _ = service.display_info(dest.id)
        info.append("  Destination: ", style="bold")
        info.append(name + (f" ({account})" if account else "") + "\n")
        info.append(f"               {dest.id}\n", style="dim")
        for source in dest.sources:
            s_name, s_account, _ = service.display_info(source.id)
            info.append("    ← ", style="cyan")
            info.append(s_name + (f" ({s_account})" if s_account else ""))
            if source.require_accepted:
                info.append("  accepted only", style="yellow")
            info.append("\n")
        days = dest.look_ahead_days or cfg.look_ahead_days
        info.append(f"    Window: {days} day(s)\n", style="dim")
    info.append("  Operation: ")
    info.append("SYNC", style="bold green")
    if cfg.dry_run:
        info.append("\n  Mode:      ")
        info.append("DRY RUN", style="bold magenta")

    if not quiet:
        console.print(Panel(info, title="[bold]Busy Mirror[/bold]"))

    # -- Confirmation --------------------------------------------------------
    if not cfg.yes and not cfg.dry_run:
        typer.confirm("Proceed?", abort=True)

    # -- Run -----------------------------------------------------------------
    try:
        report = BusyMirror(cfg, service=service).run()
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    _print_results(report)

    if report.errors:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: purge
# ---------------------------------------------------------------------------


@app.command()
def purge(
    calendar_uid: Annotated[str, typer.Argument(help="Calendar UID to list or purge")],
    days: Annotated[
        int, typer.Option("--days", min=1, help="Horizon in days from now (default: 30)")
    ] = 30,
    until: Annotated[
        str | None,
        typer.Option("--until", help="Horizon date YYYY-MM-DD (overrides --days)"),
    ] = None,
    delete: Annotated[
        bool, typer.Option("--delete", help="Delete every listed event instead of reporting")
    ] = False,
    yes: _YES = False,
) -> None:
    """List future events grouped by time slot, or delete them all.

    Slots holding more than one event are flagged as duplicates.
    """
    from busy_mirror.sync.purge import purge as run_purge

    _setup_logging(state.verbose)
    now = datetime.now(timezone.utc)
    if until:
        try:
            horizon = datetime.combine(date.fromisoformat(until), datetime.min.time()).astimezone()
        except ValueError:
            console.print(f"[bold red]Error:[/] Invalid date: {until!r}")
            raise typer.Exit(1) from None
    else:
        horizon = now + timedelta(days=days)

    service = _open_service()
    try:
        client = service.open(calendar_uid)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None

    name, account, _ = service.display_info(calendar_uid)
    console.print(
        f"[bold]Calendar:[/] {name}" + (f" ({account})" if account else "")
        + f" [dim]({calendar_uid})[/dim]"
    )
    console.print(f"[bold]Horizon:[/] {horizon:%Y-%m-%d %H:%M}")

    if delete and not yes:
        typer.confirm("Delete EVERY event in this window?", abort=True)

    try:
        report = run_purge(client, calendar_uid, horizon, delete=delete, now=now)
    except CalendarSyncError as e:
        console.print(f"[bold red]Purge failed:[/] {e}")
        raise typer.Exit(1) from None

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Count", justify="right")
    table.add_column("Title")
    table.add_column("Description", overflow="fold")
    for group in report.groups:
        count = Text(str(group.count))
        if group.duplicate:
            count.append(" dup", style="bold yellow")
        table.add_row(
            f"{group.start.astimezone():%Y-%m-%d %H:%M}",
            f"{group.end.astimezone():%Y-%m-%d %H:%M}",
            count,
            group.title,
            group.description,
        )
    console.print(table)

    summary = f"[bold]{report.total}[/bold] event(s), [bold]{report.duplicates}[/bold] duplicated slot(s)"
    if delete:
        summary += f", [bold]{report.deleted}[/bold] deleted"
    console.print(summary)

    if report.errors:
        console.print(f"[bold red]{report.errors} deletion(s) failed[/]")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: check
# ---------------------------------------------------------------------------


@app.command()
def check() -> None:
    """Verify that every configured calendar exists and is reachable."""
    from busy_mirror.preflight import run_preflight_checks

    _setup_logging(state.verbose)
    cfg = _load_mirror_config()
    if not run_preflight_checks(cfg, console):
        raise typer.Exit(1)
    console.print("[green]All configured calendars are reachable.[/]")


# ---------------------------------------------------------------------------
# Subcommand: calendars
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List all configured EDS calendars."""
    service = _open_service()

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Display Name", style="bold")
    table.add_column("Account")
    table.add_column("Mode")
    table.add_column("UID", style="dim")

    styles = {"Read-write": "green", "Read-only": "yellow"}
    for name, account, mode, uid in service.list_calendars():
        table.add_row(name, account, Text(mode, style=styles.get(mode, "red")), uid)

    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show the configuration file and the destinations it defines."""
    config_exists = state.config_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    console.print(Panel(cfg_info, title="[bold]Busy Mirror — Status[/bold]"))

    if not config_exists:
        console.print("[yellow]No config file yet — create one to define destinations.[/]")
        return

    cfg = _load_mirror_config()

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Destination", overflow="fold")
    table.add_column("Sources", overflow="fold")
    table.add_column("Days", justify="right")
    table.add_column("Notify")
    for dest in cfg.destinations:
        sources = "\n".join(
            s.id + (" (accepted only)" if s.require_accepted else "") for s in dest.sources
        )
        days = dest.look_ahead_days or cfg.look_ahead_days
        table.add_row(dest.id, sources, str(days), ", ".join(dest.notify_emails) or "—")
    console.print(table)

    if cfg.smtp is None and any(d.notify_emails for d in cfg.destinations):
        console.print("[yellow]Warning:[/] notify_emails set but no smtp_host configured.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
