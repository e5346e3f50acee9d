"""
Stateless event-inspection helpers.
"""

import logging
import re
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Callable

import gi

_logger = logging.getLogger(__name__)

gi.require_version("GLib", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import GLib
from gi.repository import ICalGLib

from busy_mirror.models import MANAGED_CATEGORY

# Regex to extract excluded dates from EXDATE lines in an iCal string.
# Only the VALUE=DATE form (EXDATE;VALUE=DATE:20260216) is matched; datetime
# EXDATEs are read through get_exdate(). Captures the YYYYMMDD value.
_EXDATE_DATE_RE = re.compile(r"^EXDATE;VALUE=DATE[^:\n]*:(\d{8})", re.MULTILINE)

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# The M365 backend (e-m365-error-quark) embeds the Exchange EWS error name in the
# message string rather than mapping it to a fixed quark code.
_M365_ERROR_DOMAIN = "e-m365-error-quark"
_M365_NOT_FOUND_MSG = "ErrorItemNotFound"

# Upper bound on iterator steps per recurring master, counted from wherever
# expansion starts (the window when the iterator can seek, DTSTART otherwise).
_MAX_OCCURRENCES = 500_000

ZoneResolver = Callable[[str], "ICalGLib.Timezone | None"]


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist.

    An event that vanished between listing and deletion is already in the
    desired state, so callers treat this as success.
    """
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
        if _M365_ERROR_DOMAIN in domain and _M365_NOT_FOUND_MSG in (e.message or ""):
            return True
    return "object not found" in str(e).lower()


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS API."""
    if isinstance(obj, str):
        return ICalGLib.Component.new_from_string(obj)
    return obj


def get_vevent(comp: ICalGLib.Component) -> ICalGLib.Component | None:
    """Return the VEVENT itself, or the first VEVENT inside a VCALENDAR wrapper."""
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        return comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    return comp


def is_event_cancelled(comp: ICalGLib.Component) -> bool:
    """Return True if the event's STATUS is CANCELLED.

    Cancelled events no longer block time.
    """
    check = get_vevent(comp)
    if not check:
        return False
    status_prop = check.get_first_property(ICalGLib.PropertyKind.STATUS_PROPERTY)
    if not status_prop:
        return False
    try:
        return status_prop.get_status() == ICalGLib.PropertyStatus.CANCELLED
    except (AttributeError, TypeError):
        val = status_prop.get_value_as_string() or ""
        return val.strip().upper() == "CANCELLED"


def is_free_time(comp: ICalGLib.Component) -> bool:
    """Return True if the event is transparent (does not block time).

    TRANSP:TRANSPARENT means the event does not show the user as busy.
    Exchange sets it on declined meetings, and users set it on
    informational events.  The iCal default (no TRANSP property) is OPAQUE.
    """
    check = get_vevent(comp)
    if not check:
        return False
    transp_prop = check.get_first_property(ICalGLib.PropertyKind.TRANSP_PROPERTY)
    if not transp_prop:
        return False  # Default is OPAQUE: event blocks time
    try:
        return transp_prop.get_transp() == ICalGLib.PropertyTransp.TRANSPARENT
    except (AttributeError, TypeError):
        val = transp_prop.get_value_as_string() or ""
        return val.strip().upper() == "TRANSPARENT"


def is_managed_event(comp: ICalGLib.Component) -> bool:
    """Check if an event was created by busy-mirror.

    The marker lives in CATEGORIES because Microsoft 365 strips X-properties
    and COMMENT from stored events.
    """
    check = get_vevent(comp)
    if not check:
        return False
    prop = check.get_first_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    while prop:
        categories = prop.get_categories()
        if categories and MANAGED_CATEGORY in categories:
            return True
        prop = check.get_next_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    return False


def _strip_mailto(value: str | None) -> str:
    value = (value or "").strip()
    if value.lower().startswith("mailto:"):
        value = value[len("mailto:"):]
    return value.lower()


def is_accepted_by_user(comp: ICalGLib.Component, user_email: str | None) -> bool:
    """Return True if ``user_email`` accepted (or owns) the event.

    Events without attendees are the account holder's own entries and count
    as accepted, as do meetings the user organises.  Otherwise the user's
    ATTENDEE line must carry PARTSTAT=ACCEPTED.  Without a known e-mail
    address a meeting can never be confirmed as accepted.
    """
    check = get_vevent(comp)
    if not check:
        return False

    attendee = check.get_first_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY)
    if attendee is None:
        return True
    if not user_email:
        return False
    email = user_email.strip().lower()

    organizer = check.get_first_property(ICalGLib.PropertyKind.ORGANIZER_PROPERTY)
    if organizer is not None and _strip_mailto(organizer.get_organizer()) == email:
        return True

    while attendee:
        if _strip_mailto(attendee.get_attendee()) == email:
            param = attendee.get_first_parameter(ICalGLib.ParameterKind.PARTSTAT_PARAMETER)
            return param is not None and param.get_partstat() == ICalGLib.ParameterPartstat.ACCEPTED
        attendee = check.get_next_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY)
    return False


def get_text(comp: ICalGLib.Component, kind: ICalGLib.PropertyKind) -> str:
    """Return the string value of the first ``kind`` property, or ''."""
    check = get_vevent(comp)
    if not check:
        return ""
    prop = check.get_first_property(kind)
    if not prop:
        return ""
    return prop.get_value_as_string() or ""


def _resolve_zone(t: ICalGLib.Time, resolve_zone: ZoneResolver | None):
    zone = t.get_timezone()
    if zone is not None:
        return zone
    tzid = t.get_tzid()
    if not tzid:
        return None
    if resolve_zone is not None:
        zone = resolve_zone(tzid)
        if zone is not None:
            return zone
    return ICalGLib.Timezone.get_builtin_timezone_from_tzid(
        tzid
    ) or ICalGLib.Timezone.get_builtin_timezone(tzid)


def ical_time_to_datetime(
    t: ICalGLib.Time, resolve_zone: ZoneResolver | None = None
) -> datetime:
    """Convert an ICalGLib.Time into a timezone-aware datetime.

    Date-only values map to local midnight.  Floating times (no TZID) are
    taken as local wall-clock time.
    """
    if t.is_date():
        return datetime(t.get_year(), t.get_month(), t.get_day()).astimezone()
    if t.is_utc():
        return datetime.fromtimestamp(t.as_timet(), tz=timezone.utc)
    zone = _resolve_zone(t, resolve_zone)
    if zone is not None:
        return datetime.fromtimestamp(t.as_timet_with_zone(zone), tz=timezone.utc)
    return datetime(
        t.get_year(), t.get_month(), t.get_day(), t.get_hour(), t.get_minute(), t.get_second()
    ).astimezone()


def datetime_to_ical_time(dt: datetime) -> ICalGLib.Time:
    """Convert an aware datetime into a UTC ICalGLib.Time."""
    return ICalGLib.Time.new_from_timet_with_zone(
        int(dt.timestamp()), 0, ICalGLib.Timezone.get_utc_timezone()
    )


def to_sexp_time(dt: datetime) -> str:
    """Format an aware datetime for an EDS ``make-time`` s-expression."""
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _event_span(
    check: ICalGLib.Component, resolve_zone: ZoneResolver | None
) -> tuple[datetime, timedelta, bool]:
    """Return (start, duration, is_all_day) of a VEVENT."""
    dtstart = check.get_dtstart()
    start = ical_time_to_datetime(dtstart, resolve_zone)
    is_date = bool(dtstart.is_date())

    if check.get_first_property(ICalGLib.PropertyKind.DTEND_PROPERTY):
        end = ical_time_to_datetime(check.get_dtend(), resolve_zone)
        return start, max(end - start, timedelta(0)), is_date
    if check.get_first_property(ICalGLib.PropertyKind.DURATION_PROPERTY):
        return start, timedelta(seconds=check.get_duration().as_int()), is_date
    return start, timedelta(days=1) if is_date else timedelta(0), is_date


def _overlaps(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    if start == end:
        return window_start <= start < window_end
    return start < window_end and end > window_start


def _collect_exdates(check: ICalGLib.Component, comp: ICalGLib.Component, resolve_zone):
    """Return (excluded datetimes, excluded YYYYMMDD strings for date-only EXDATEs)."""
    excluded: set[datetime] = set()
    excluded_days: set[str] = set()
    prop = check.get_first_property(ICalGLib.PropertyKind.EXDATE_PROPERTY)
    while prop:
        try:
            t = prop.get_exdate()
            if t and not t.is_null_time():
                if t.is_date():
                    excluded_days.add(f"{t.get_year():04d}{t.get_month():02d}{t.get_day():02d}")
                else:
                    excluded.add(ical_time_to_datetime(t, resolve_zone))
        except GLib.Error as e:
            _logger.debug("Unreadable EXDATE on %s: %s", check.get_uid(), e)
        prop = check.get_next_property(ICalGLib.PropertyKind.EXDATE_PROPERTY)

    # get_exdate() returns null_time for EXDATE;VALUE=DATE in some libical-glib
    # builds; read those straight from the serialised top-level component.
    for m in _EXDATE_DATE_RE.finditer(comp.as_ical_string() or ""):
        excluded_days.add(m.group(1))
    return excluded, excluded_days


def _series_time(dt: datetime, dtstart: ICalGLib.Time, zone) -> ICalGLib.Time:
    """Express ``dt`` in the same form as DTSTART (date, UTC, zoned or floating)."""
    if dtstart.is_date():
        return ICalGLib.Time.new_from_string(dt.astimezone().strftime("%Y%m%d"))
    if dtstart.is_utc():
        return ICalGLib.Time.new_from_string(
            dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        )
    if zone is not None:
        return ICalGLib.Time.new_from_timet_with_zone(int(dt.timestamp()), 0, zone)
    return ICalGLib.Time.new_from_string(dt.astimezone().strftime("%Y%m%dT%H%M%S"))


def _seek(it: ICalGLib.RecurIterator, rrule, start: ICalGLib.Time) -> bool:
    """Move the iterator to the first occurrence at or after ``start``.

    libical refuses to seek COUNT-bounded rules; those are walked from DTSTART.
    """
    if rrule.get_count() > 0:
        return False
    try:
        return bool(it.set_start(start))
    except (AttributeError, GLib.Error):
        return False


def _occurrence_start(occ: ICalGLib.Time, dtstart: ICalGLib.Time, zone) -> datetime:
    """Interpret an iterator result in the series' own zone.

    RecurIterator results keep DTSTART's wall-clock fields but not always its
    zone, so the zone is taken from DTSTART.
    """
    if dtstart.is_date():
        return datetime(occ.get_year(), occ.get_month(), occ.get_day()).astimezone()
    wall = datetime(
        occ.get_year(), occ.get_month(), occ.get_day(),
        occ.get_hour(), occ.get_minute(), occ.get_second(),
    )
    if dtstart.is_utc():
        return wall.replace(tzinfo=timezone.utc)
    if zone is not None:
        return datetime.fromtimestamp(occ.as_timet_with_zone(zone), tz=timezone.utc)
    return wall.astimezone()


def expand_occurrences(
    comp: ICalGLib.Component,
    window_start: datetime,
    window_end: datetime,
    overridden: set[datetime] | None = None,
    resolve_zone: ZoneResolver | None = None,
) -> list[tuple[datetime, datetime]]:
    """Return the (start, end) occurrences of an event overlapping the window.

    Non-recurring events yield at most one occurrence.  Recurring masters are
    expanded with ICalGLib.RecurIterator; EXDATEs and occurrences replaced by
    a RECURRENCE-ID exception (``overridden``) are skipped.
    """
    check = get_vevent(comp)
    if not check:
        return []

    start, duration, is_date = _event_span(check, resolve_zone)
    rrule_prop = check.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
    if not rrule_prop:
        end = start + duration
        return [(start, end)] if _overlaps(start, end, window_start, window_end) else []

    overridden = overridden or set()
    excluded, excluded_days = _collect_exdates(check, comp, resolve_zone)

    dtstart = check.get_dtstart()
    zone = None if is_date or dtstart.is_utc() else _resolve_zone(dtstart, resolve_zone)
    occurrences = []
    rrule = rrule_prop.get_rrule()
    it = ICalGLib.RecurIterator.new(rrule, dtstart)
    # Occurrences starting up to one duration before the window still overlap it.
    seek_from = window_start - duration
    if seek_from > start and not _seek(it, rrule, _series_time(seek_from, dtstart, zone)):
        _logger.debug("Walking %s from DTSTART", check.get_uid())
    for _ in range(_MAX_OCCURRENCES):
        occ = it.next()
        if occ is None or occ.is_null_time():
            break
        occ_start = _occurrence_start(occ, dtstart, zone)
        if occ_start >= window_end:
            break
        occ_day = f"{occ.get_year():04d}{occ.get_month():02d}{occ.get_day():02d}"
        if occ_start in excluded or occ_day in excluded_days or occ_start in overridden:
            continue
        occ_end = occ_start + duration
        if _overlaps(occ_start, occ_end, window_start, window_end):
            occurrences.append((occ_start, occ_end))
    else:
        _logger.warning(
            "Recurrence expansion of %s stopped after %d occurrences",
            check.get_uid(),
            _MAX_OCCURRENCES,
        )
    return occurrences


def build_busy_component(
    uid: str, title: str, start: datetime, end: datetime, description: str
) -> ICalGLib.Component:
    """Build a managed, opaque VEVENT for a busy block."""
    comp = ICalGLib.Component.new_vevent()
    comp.add_property(ICalGLib.Property.new_uid(uid))
    comp.add_property(ICalGLib.Property.new_summary(title))
    comp.add_property(ICalGLib.Property.new_description(description))
    comp.add_property(ICalGLib.Property.new_dtstart(datetime_to_ical_time(start)))
    comp.add_property(ICalGLib.Property.new_dtend(datetime_to_ical_time(end)))
    comp.add_property(
        ICalGLib.Property.new_dtstamp(datetime_to_ical_time(datetime.now(timezone.utc)))
    )
    comp.add_property(ICalGLib.Property.new_transp(ICalGLib.PropertyTransp.OPAQUE))
    comp.add_property(ICalGLib.Property.new_categories(MANAGED_CATEGORY))
    return comp
