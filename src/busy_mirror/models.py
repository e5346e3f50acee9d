"""
Pure data models; no EDS or SMTP imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_CONFIG = Path.home() / ".config/busy-mirror.conf"
DEFAULT_LOOK_AHEAD_DAYS = 30

BUSY_TITLE = "Busy"
MANAGED_CATEGORY = "BUSY-MIRROR-MANAGED"


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ConfigError(CalendarSyncError):
    """The configuration file is missing required values or is inconsistent."""


class SourceFetchError(CalendarSyncError):
    """A source calendar could not be opened or read."""


class DestinationResolutionError(CalendarSyncError):
    """A destination calendar could not be opened or read."""


class NotificationError(CalendarSyncError):
    """A run summary could not be delivered."""


class ErrorKind(str, Enum):
    SOURCE_FETCH = "source-fetch"
    DESTINATION_RESOLUTION = "destination-resolution"
    EVENT_WRITE = "event-write"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class SourceRef:
    """A source calendar of one destination."""

    id: str
    require_accepted: bool = False


@dataclass
class DestinationConfig:
    """One destination calendar and the sources mirrored into it."""

    id: str
    sources: list[SourceRef]
    look_ahead_days: int | None = None
    notify_emails: list[str] = field(default_factory=list)
    managed_only: bool = False  # only delete events this tool created
    protect_failed_sources: bool = False  # keep mirrors of sources that failed this run


@dataclass
class SmtpSettings:
    host: str
    port: int = 587
    starttls: bool = True
    user: str | None = None
    sender: str | None = None
    password_env: str = "BUSY_MIRROR_SMTP_PASSWORD"


@dataclass
class MirrorConfig:
    """Configuration for a busy-block mirror run."""

    destinations: list[DestinationConfig]
    look_ahead_days: int = DEFAULT_LOOK_AHEAD_DAYS
    account_email: str | None = None
    smtp: SmtpSettings | None = None
    dry_run: bool = False
    yes: bool = False  # Auto-confirm without prompting


@dataclass
class CalendarEvent:
    """A single event occurrence as returned by the calendar service."""

    start: datetime
    end: datetime
    title: str = ""
    description: str = ""
    uid: str = ""
    accepted: bool = True  # invoking account accepted or owns the event
    managed: bool = False  # carries MANAGED_CATEGORY
    rid: str | None = None  # recurrence-id of the stored object, if any


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    marker: str


@dataclass
class SyncIssue:
    """Per-item failure recorded during a run."""

    kind: ErrorKind
    calendar_id: str
    message: str


@dataclass
class DestinationResult:
    """Outcome of reconciling one destination."""

    destination_id: str
    created: int = 0
    deleted: int = 0
    error: ErrorKind | None = None
    issues: list[SyncIssue] = field(default_factory=list)

    @property
    def errors(self) -> int:
        """Sync failures; notification failures never count against a run."""
        return sum(1 for i in self.issues if i.kind is not ErrorKind.NOTIFICATION)


@dataclass
class RunReport:
    """Statistics for one mirror run."""

    results: list[DestinationResult] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(r.created for r in self.results)

    @property
    def deleted(self) -> int:
        return sum(r.deleted for r in self.results)

    @property
    def errors(self) -> int:
        return sum(r.errors for r in self.results)
