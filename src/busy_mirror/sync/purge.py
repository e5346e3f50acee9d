"""
List or delete future events of one calendar, grouped by time slot.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone

from busy_mirror.models import CalendarEvent
from busy_mirror.models import CalendarSyncError

logger = logging.getLogger(__name__)


@dataclass
class PurgeGroup:
    """All events sharing one (start, end) slot."""

    start: datetime
    end: datetime
    events: list[CalendarEvent] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.events)

    @property
    def title(self) -> str:
        return self.events[0].title if self.events else ""

    @property
    def description(self) -> str:
        return self.events[0].description if self.events else ""

    @property
    def duplicate(self) -> bool:
        return self.count > 1


@dataclass
class PurgeReport:
    calendar_id: str
    groups: list[PurgeGroup] = field(default_factory=list)
    deleted: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return sum(g.count for g in self.groups)

    @property
    def duplicates(self) -> int:
        return sum(1 for g in self.groups if g.duplicate)


def group_events(events: list[CalendarEvent]) -> list[PurgeGroup]:
    """Group events by (start, end), earliest slot first."""
    groups: dict[tuple[datetime, datetime], PurgeGroup] = {}
    for event in events:
        slot = (event.start, event.end)
        if slot not in groups:
            groups[slot] = PurgeGroup(event.start, event.end)
        groups[slot].events.append(event)
    return [groups[slot] for slot in sorted(groups)]


def purge(
    client,
    calendar_id: str,
    horizon: datetime,
    *,
    delete: bool = False,
    now: datetime | None = None,
) -> PurgeReport:
    """Report (and optionally delete) every event between now and ``horizon``."""
    now = now or datetime.now(timezone.utc)
    events = client.get_events(now, horizon, busy_only=False)
    report = PurgeReport(calendar_id, group_events(events))
    logger.info(
        f"{calendar_id}: {report.total} event(s) in {len(report.groups)} slot(s), "
        f"{report.duplicates} duplicated slot(s)"
    )

    if not delete:
        for group in report.groups:
            if group.duplicate:
                logger.debug(
                    f"Duplicate slot {group.start.isoformat()}: {group.count} x {group.title!r}"
                )
        return report

    for group in report.groups:
        for event in group.events:
            try:
                client.remove_event(event)
            except CalendarSyncError as e:
                logger.error(f"Failed to delete {event.uid}: {e}")
                report.errors += 1
                continue
            logger.debug(f"Deleted {event.uid} ({event.title})")
            report.deleted += 1

    logger.info(f"{calendar_id}: deleted {report.deleted} event(s)")
    return report
