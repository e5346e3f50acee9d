"""
Evolution Data Server calendar connectivity wrapper.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Tuple

import gi
gi.require_version('EDataServer', '1.2')
gi.require_version('ECal', '2.0')
gi.require_version('ICalGLib', '3.0')
from gi.repository import EDataServer, ECal, ICalGLib, GLib

from .models import CalendarEvent, CalendarSyncError
from .sync.utils import (
    build_busy_component,
    expand_occurrences,
    get_text,
    get_vevent,
    ical_time_to_datetime,
    is_accepted_by_user,
    is_event_cancelled,
    is_free_time,
    is_managed_event,
    is_not_found_error,
    parse_component,
    to_sexp_time,
)

logger = logging.getLogger(__name__)


def get_calendar_display_info(calendar_uid: str, registry=None) -> Tuple[str, str, str]:
    """
    Get human-readable information about a calendar.

    Returns:
        Tuple of (display_name, account_name, uid)
    """
    try:
        registry = registry or EDataServer.SourceRegistry.new_sync(None)
        source = registry.ref_source(calendar_uid)

        if not source:
            return ("Unknown Calendar", "", calendar_uid)

        display_name = source.get_display_name() or "Unnamed Calendar"
        return (display_name, _parent_display_name(registry, source), calendar_uid)
    except GLib.Error as e:
        return (f"Error: {e.message}", "", calendar_uid)


def _parent_display_name(registry, source) -> str:
    """Return the display name of the source's parent account, or empty string."""
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


class EDSCalendarClient:
    """Wrapper for Evolution Data Server calendar operations."""

    def __init__(self, registry: EDataServer.SourceRegistry, calendar_uid: str):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.client: Optional[ECal.Client] = None
        self._zones: dict[str, Optional[ICalGLib.Timezone]] = {}

    def connect(self, timeout: int = 10):
        """Connect to the specified calendar in EDS."""
        source = self.registry.ref_source(self.calendar_uid)
        if not source:
            raise CalendarSyncError(
                f"Calendar with UID '{self.calendar_uid}' not found in EDS"
            )

        try:
            self.client = ECal.Client.connect_sync(
                source,
                ECal.ClientSourceType.EVENTS,
                timeout,
                None
            )
        except GLib.Error as e:
            raise CalendarSyncError(
                f"Failed to connect to calendar {self.calendar_uid}: {e.message}"
            )

    def _require_client(self) -> ECal.Client:
        if not self.client:
            raise CalendarSyncError("Client not connected")
        return self.client

    def is_readonly(self) -> bool:
        return bool(self._require_client().is_readonly())

    def get_account_email(self) -> Optional[str]:
        """Return the e-mail address the backend acts as, if it reports one."""
        client = self._require_client()
        try:
            success, value = client.get_backend_property_sync(
                ECal.BACKEND_PROPERTY_CAL_EMAIL_ADDRESS, None
            )
        except GLib.Error as e:
            logger.debug("No account e-mail for %s: %s", self.calendar_uid, e.message)
            return None
        if not success:
            return None
        return value or None

    def _resolve_zone(self, tzid: str) -> Optional[ICalGLib.Timezone]:
        """Look up a TZID in the calendar's own VTIMEZONE store."""
        if tzid not in self._zones:
            try:
                success, zone = self._require_client().get_timezone_sync(tzid, None)
                self._zones[tzid] = zone if success else None
            except GLib.Error:
                self._zones[tzid] = None
        return self._zones[tzid]

    def get_events(
        self,
        start: datetime,
        end: datetime,
        account_email: Optional[str] = None,
        busy_only: bool = True,
    ) -> list[CalendarEvent]:
        """Retrieve event occurrences overlapping [start, end).

        Recurring series are expanded into one CalendarEvent per occurrence.
        With ``busy_only`` cancelled and transparent events are dropped.
        """
        client = self._require_client()
        sexp = (
            f'(occur-in-time-range? (make-time "{to_sexp_time(start)}") '
            f'(make-time "{to_sexp_time(end)}"))'
        )
        try:
            _, objects = client.get_object_list_sync(sexp, None)
        except GLib.Error as e:
            raise CalendarSyncError(f"Failed to fetch events: {e.message}")

        masters = []
        overridden: dict[str, set[datetime]] = {}
        exceptions = []
        for obj in objects:
            try:
                vevent = get_vevent(parse_component(obj))
                if not vevent:
                    continue
                if vevent.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY):
                    rid = ical_time_to_datetime(vevent.get_recurrenceid(), self._resolve_zone)
                    overridden.setdefault(vevent.get_uid(), set()).add(rid)
                    exceptions.append(vevent)
                else:
                    masters.append(vevent)
            except (GLib.Error, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable object in {self.calendar_uid}: {e}")

        events: list[CalendarEvent] = []
        for vevent in masters + exceptions:
            try:
                events.extend(
                    self._to_events(vevent, start, end, account_email, busy_only, overridden)
                )
            except (GLib.Error, ValueError, TypeError) as e:
                logger.error(
                    f"Skipping malformed event {vevent.get_uid()} in {self.calendar_uid}: {e}"
                )

        events.sort(key=lambda e: (e.start, e.end))
        return events

    def _to_events(
        self,
        vevent: ICalGLib.Component,
        start: datetime,
        end: datetime,
        account_email: Optional[str],
        busy_only: bool,
        overridden: dict[str, set[datetime]],
    ) -> list[CalendarEvent]:
        """Expand one stored VEVENT into the occurrences overlapping [start, end)."""
        if busy_only and (is_event_cancelled(vevent) or is_free_time(vevent)):
            return []

        events: list[CalendarEvent] = []
        uid = vevent.get_uid() or ""
        is_exception = vevent.get_first_property(
            ICalGLib.PropertyKind.RECURRENCEID_PROPERTY
        ) is not None
        recurring = vevent.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY) is not None

        occurrences = expand_occurrences(
            vevent,
            start,
            end,
            overridden=None if is_exception else overridden.get(uid),
            resolve_zone=self._resolve_zone,
        )
        title = get_text(vevent, ICalGLib.PropertyKind.SUMMARY_PROPERTY)
        description = get_text(vevent, ICalGLib.PropertyKind.DESCRIPTION_PROPERTY)
        accepted = is_accepted_by_user(vevent, account_email)
        managed = is_managed_event(vevent)

        for occ_start, occ_end in occurrences:
            if is_exception:
                rid = vevent.get_recurrenceid().as_ical_string()
            elif recurring:
                rid = to_sexp_time(occ_start)
            else:
                rid = None
            events.append(CalendarEvent(
                start=occ_start,
                end=occ_end,
                title=title,
                description=description,
                uid=uid,
                accepted=accepted,
                managed=managed,
                rid=rid,
            ))
        return events

    def create_busy_event(
        self, title: str, start: datetime, end: datetime, description: str
    ) -> Optional[str]:
        """Create a managed busy block and return the UID the server assigned."""
        client = self._require_client()
        component = build_busy_component(str(uuid.uuid4()), title, start, end, description)

        try:
            success, out_uid = client.create_object_sync(
                component,
                ECal.OperationFlags.NONE,
                None
            )
        except GLib.Error as e:
            raise CalendarSyncError(f"Failed to create event: {e.message}")
        if not success:
            raise CalendarSyncError("Failed to create event")
        return out_uid

    def remove_event(self, event: CalendarEvent):
        """Remove an event (or a single occurrence of a series) from the calendar."""
        client = self._require_client()

        try:
            success = client.remove_object_sync(
                event.uid,
                event.rid,
                ECal.ObjModType.THIS,
                ECal.OperationFlags.NONE,
                None  # cancellable
            )
        except GLib.Error as e:
            if is_not_found_error(e):
                logger.debug("Event %s already gone", event.uid)
                return
            raise CalendarSyncError(f"Failed to remove event {event.uid}: {e.message}")
        if not success:
            raise CalendarSyncError(f"Failed to remove event {event.uid}")


class EDSCalendarService:
    """Opens EDS calendars by UID; connections are reused for one run."""

    def __init__(self, registry: Optional[EDataServer.SourceRegistry] = None, timeout: int = 10):
        if registry is None:
            try:
                registry = EDataServer.SourceRegistry.new_sync(None)
            except GLib.Error as e:
                raise CalendarSyncError(f"EDS registry unavailable: {e.message}")
        self.registry = registry
        self.timeout = timeout
        self._clients: dict[str, EDSCalendarClient] = {}

    def open(self, calendar_uid: str) -> EDSCalendarClient:
        if calendar_uid not in self._clients:
            client = EDSCalendarClient(self.registry, calendar_uid)
            client.connect(self.timeout)
            self._clients[calendar_uid] = client
        return self._clients[calendar_uid]

    def display_info(self, calendar_uid: str) -> Tuple[str, str, str]:
        return get_calendar_display_info(calendar_uid, self.registry)

    def list_calendars(self) -> list[tuple[str, str, str, str]]:
        """Return (display_name, account, mode, uid) for every EDS calendar."""
        entries = []
        for source in self.registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR):
            name = source.get_display_name() or "(unnamed)"
            try:
                client = ECal.Client.connect_sync(source, ECal.ClientSourceType.EVENTS, 5, None)
                mode = "Read-only" if client.is_readonly() else "Read-write"
            except GLib.Error:
                mode = "Unknown"
            entries.append(
                (name, _parent_display_name(self.registry, source), mode, source.get_uid() or "")
            )
        return entries
