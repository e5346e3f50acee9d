"""
Preflight checks behind `busy-mirror check`: every configured calendar must
exist in EDS and connect, and destinations must be writable.
"""

import logging

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from busy_mirror.models import MirrorConfig

logger = logging.getLogger(__name__)

_OFFLINE_KEYWORDS = frozenset(
    {
        "offline",
        "network",
        "transport",
        "unreachable",
        "not connected",
        "no route",
        "authentication failed",
        "connection refused",
        "temporary failure",
    }
)


def _calendars_to_check(cfg: MirrorConfig) -> list[tuple[str, str, bool]]:
    """Return (uid, label, needs_write) for every configured calendar, once each."""
    seen: dict[str, tuple[str, str, bool]] = {}
    for dest in cfg.destinations:
        seen[dest.id] = (dest.id, "Destination", True)
    for dest in cfg.destinations:
        for source in dest.sources:
            seen.setdefault(source.id, (source.id, "Source", False))
    return list(seen.values())


def run_preflight_checks(cfg: MirrorConfig, console: Console) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    import gi

    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
    from gi.repository import ECal
    from gi.repository import EDataServer
    from gi.repository import GLib

    from busy_mirror.eds_client import _parent_display_name

    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. EDS registry reachable
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        logger.error("EDS registry unreachable: %s", e.message)
        issues.append(
            (
                "EDS registry",
                e.message,
                "Is evolution-data-server running?",
            )
        )
        _print_issues(issues, console)
        return False

    # 2 & 3. Calendar UID exists + connectable (+ writable for destinations)
    for uid, label, needs_write in _calendars_to_check(cfg):
        source = registry.ref_source(uid)
        if source is None:
            logger.error("Calendar UID not found in EDS: %s", uid)
            issues.append(
                (
                    label,
                    f"UID not found: {uid}",
                    "Run: busy-mirror calendars",
                )
            )
            continue

        try:
            client = ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
        except GLib.Error as e:
            msg = e.message or str(e)
            logger.error("Cannot connect to %s calendar (%s): %s", label.lower(), uid, msg)
            if any(kw in msg.lower() for kw in _OFFLINE_KEYWORDS):
                # Try to find the parent account name for a better hint
                account_name = _parent_display_name(registry, source)
                if account_name:
                    hint = f"Account '{account_name}' appears offline; check GNOME Online Accounts"
                else:
                    hint = "Calendar appears offline; check GNOME Online Accounts"
            else:
                hint = msg
            issues.append((label, f"Connection failed: {msg}", hint))
            continue

        if needs_write and client.is_readonly():
            logger.error("Destination calendar is read-only: %s", uid)
            issues.append(
                (
                    label,
                    f"Read-only: {source.get_display_name() or uid}",
                    "Pick a writable calendar as destination",
                )
            )

    if issues:
        _print_issues(issues, console)
        return False

    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
