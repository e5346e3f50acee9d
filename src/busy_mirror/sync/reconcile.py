"""
Busy-block reconciliation: delete stale mirrors, then create missing ones.
"""

import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from busy_mirror.models import BUSY_TITLE
from busy_mirror.models import BusyInterval
from busy_mirror.models import CalendarSyncError
from busy_mirror.models import DestinationConfig
from busy_mirror.models import DestinationResolutionError
from busy_mirror.models import DestinationResult
from busy_mirror.models import ErrorKind
from busy_mirror.models import SourceFetchError
from busy_mirror.models import SourceRef
from busy_mirror.models import SyncIssue

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MARKER_PREFIX = "from "


def source_marker(source_id: str) -> str:
    """Provenance string stored in a mirrored event's description."""
    return f"{_MARKER_PREFIX}{source_id}"


def _epoch_ms(dt: datetime) -> int:
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def reconcile_key(start: datetime, end: datetime, marker: str) -> str:
    """Identity of a mirrored event: ``<start_ms>|<end_ms>|<marker>``."""
    return f"{_epoch_ms(start)}|{_epoch_ms(end)}|{marker}"


def sync_window(now: datetime, look_ahead_days: int) -> tuple[datetime, datetime]:
    return now, now + timedelta(days=look_ahead_days)


def _fetch_source(
    service,
    source: SourceRef,
    win_start: datetime,
    win_end: datetime,
    account_email: str | None,
) -> list[BusyInterval]:
    """Return the busy intervals of one source, tagged with its marker."""
    try:
        client = service.open(source.id)
        email = account_email
        if source.require_accepted and not email:
            email = client.get_account_email()
            if not email:
                logger.warning(
                    f"Source {source.id}: no account e-mail known, "
                    f"only events without attendees count as accepted"
                )
        events = client.get_events(win_start, win_end, account_email=email)
    except CalendarSyncError as e:
        raise SourceFetchError(f"Source {source.id}: {e}") from e
    except Exception as e:
        logger.exception(f"Source {source.id}: unexpected error while reading events")
        raise SourceFetchError(f"Source {source.id}: {type(e).__name__}: {e}") from e

    marker = source_marker(source.id)
    intervals = []
    for event in events:
        if event.managed:
            continue  # never re-mirror our own busy blocks
        if source.require_accepted and not event.accepted:
            logger.debug(f"Skipping unaccepted event {event.uid} from {source.id}")
            continue
        intervals.append(BusyInterval(event.start, event.end, marker))
    return intervals


def _collect_sources(
    result: DestinationResult,
    destination: DestinationConfig,
    service,
    win_start: datetime,
    win_end: datetime,
    account_email: str | None,
) -> tuple[list[BusyInterval], set[str]]:
    """Fetch every source best-effort; returns (intervals, markers of failed sources)."""
    source_events: list[BusyInterval] = []
    failed_markers: set[str] = set()

    for source in destination.sources:
        try:
            intervals = _fetch_source(service, source, win_start, win_end, account_email)
        except SourceFetchError as e:
            logger.warning(f"Skipping source: {e}")
            result.issues.append(SyncIssue(ErrorKind.SOURCE_FETCH, source.id, str(e)))
            failed_markers.add(source_marker(source.id))
            continue
        logger.debug(f"Source {source.id}: {len(intervals)} busy interval(s)")
        source_events.extend(intervals)

    return source_events, failed_markers


def _delete_stale(
    result: DestinationResult,
    destination: DestinationConfig,
    dest_client,
    dest_events: list,
    source_keys: set[str],
    failed_markers: set[str],
    dry_run: bool,
):
    """Delete destination events no longer backed by any source."""
    for event in dest_events:
        key = reconcile_key(event.start, event.end, event.description)
        if key in source_keys:
            continue
        if destination.managed_only and not event.managed:
            continue
        if destination.protect_failed_sources and event.description in failed_markers:
            logger.debug(f"Keeping {event.uid}: its source failed this run")
            continue

        if dry_run:
            logger.info(
                f"[DRY RUN] Would DELETE {event.start.isoformat()} - {event.end.isoformat()} "
                f"({event.description or event.title}) from {destination.id}"
            )
            result.deleted += 1
            continue

        try:
            dest_client.remove_event(event)
        except CalendarSyncError as e:
            logger.error(f"Failed to delete {event.uid} from {destination.id}: {e}")
            result.issues.append(SyncIssue(ErrorKind.EVENT_WRITE, destination.id, str(e)))
            continue
        logger.debug(f"Deleted stale event {event.uid} ({event.description})")
        result.deleted += 1


def _create_missing(
    result: DestinationResult,
    destination: DestinationConfig,
    dest_client,
    source_events: list[BusyInterval],
    dest_keys: set[str],
    dry_run: bool,
):
    """Create busy blocks for source intervals not yet mirrored."""
    for interval in source_events:
        key = reconcile_key(interval.start, interval.end, interval.marker)
        if key in dest_keys:
            continue
        dest_keys.add(key)

        if dry_run:
            logger.info(
                f"[DRY RUN] Would CREATE {interval.start.isoformat()} - "
                f"{interval.end.isoformat()} ({interval.marker}) in {destination.id}"
            )
            result.created += 1
            continue

        try:
            uid = dest_client.create_busy_event(
                BUSY_TITLE, interval.start, interval.end, interval.marker
            )
        except CalendarSyncError as e:
            logger.error(f"Failed to create busy block in {destination.id}: {e}")
            result.issues.append(SyncIssue(ErrorKind.EVENT_WRITE, destination.id, str(e)))
            continue
        logger.debug(f"Created busy block {uid} ({interval.marker})")
        result.created += 1


def _reconcile_into(
    result: DestinationResult,
    destination: DestinationConfig,
    days: int,
    service,
    now: datetime,
    account_email: str | None,
    dry_run: bool,
):
    win_start, win_end = sync_window(now, days)
    logger.info(f"Destination {destination.id}: syncing {days} day(s) from {win_start:%Y-%m-%d %H:%M}")

    try:
        dest_client = service.open(destination.id)
    except CalendarSyncError as e:
        raise DestinationResolutionError(f"Destination {destination.id}: {e}") from e

    source_events, failed_markers = _collect_sources(
        result, destination, service, win_start, win_end, account_email
    )
    source_keys = {reconcile_key(i.start, i.end, i.marker) for i in source_events}

    try:
        dest_events = dest_client.get_events(win_start, win_end, busy_only=False)
    except CalendarSyncError as e:
        raise DestinationResolutionError(f"Destination {destination.id}: {e}") from e
    dest_keys = {reconcile_key(e.start, e.end, e.description) for e in dest_events}

    logger.info(
        f"Destination {destination.id}: {len(source_events)} source interval(s), "
        f"{len(dest_events)} existing event(s)"
    )

    _delete_stale(
        result, destination, dest_client, dest_events, source_keys, failed_markers, dry_run
    )
    _create_missing(result, destination, dest_client, source_events, dest_keys, dry_run)


def reconcile_destination(
    destination: DestinationConfig,
    default_look_ahead_days: int,
    service,
    now: datetime,
    account_email: str | None = None,
    dry_run: bool = False,
) -> DestinationResult:
    """Mirror the busy time of a destination's sources into it.

    Never raises for calendar problems: a destination that cannot be opened
    or read is returned with ``error`` set, keeping any source issues already
    collected.
    """
    result = DestinationResult(destination.id)
    days = destination.look_ahead_days or default_look_ahead_days
    try:
        _reconcile_into(result, destination, days, service, now, account_email, dry_run)
    except DestinationResolutionError as e:
        logger.error(f"Skipping destination: {e}")
        result.error = ErrorKind.DESTINATION_RESOLUTION
        result.issues.append(SyncIssue(ErrorKind.DESTINATION_RESOLUTION, destination.id, str(e)))
        return result
    except Exception as e:
        logger.exception(f"Destination {destination.id}: unexpected failure")
        result.error = ErrorKind.DESTINATION_RESOLUTION
        result.issues.append(
            SyncIssue(
                ErrorKind.DESTINATION_RESOLUTION,
                destination.id,
                f"Destination {destination.id}: {type(e).__name__}: {e}",
            )
        )
        return result

    logger.info(
        f"Destination {destination.id}: created {result.created}, deleted {result.deleted}"
    )
    return result


def reconcile(
    destinations: list[DestinationConfig],
    default_look_ahead_days: int,
    service,
    *,
    account_email: str | None = None,
    now: datetime | None = None,
    dry_run: bool = False,
) -> list[DestinationResult]:
    """Reconcile every destination in declaration order.

    A destination that fails is reported on its result and the remaining
    destinations are still processed.  Without an explicit ``now`` each
    destination's window starts at the moment it is processed.
    """
    return [
        reconcile_destination(
            destination,
            default_look_ahead_days,
            service,
            now or datetime.now(timezone.utc),
            account_email=account_email,
            dry_run=dry_run,
        )
        for destination in destinations
    ]
