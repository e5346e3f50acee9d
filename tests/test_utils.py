"""
Unit tests for stateless helpers in busy_mirror.sync.utils.

All tests use real ICalGLib components so that libical-glib quirks are
exercised (null_time from VALUE=DATE EXDATEs, RecurIterator zone handling,
VCALENDAR wrappers, etc.).
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

gi = pytest.importorskip("gi")
try:
    gi.require_version("GLib", "2.0")
    gi.require_version("ICalGLib", "3.0")
except ValueError:
    pytest.skip("libical-glib typelib not installed", allow_module_level=True)
from gi.repository import GLib
from gi.repository import ICalGLib

from busy_mirror.sync.utils import build_busy_component
from busy_mirror.sync.utils import expand_occurrences
from busy_mirror.sync.utils import get_text
from busy_mirror.sync.utils import ical_time_to_datetime
from busy_mirror.sync.utils import is_accepted_by_user
from busy_mirror.sync.utils import is_event_cancelled
from busy_mirror.sync.utils import is_free_time
from busy_mirror.sync.utils import is_managed_event
from busy_mirror.sync.utils import is_not_found_error
from busy_mirror.sync.utils import to_sexp_time

# ---------------------------------------------------------------------------
# Module-level iCal construction helpers
# ---------------------------------------------------------------------------

_DTSTART = "20260301T100000Z"
_DTEND = "20260301T110000Z"
_DTSTAMP = "20260224T000000Z"

_WINDOW_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
_WINDOW_END = datetime(2026, 3, 31, tzinfo=timezone.utc)


def _vevent(uid: str, extra_lines: tuple = (), dtstart: str = _DTSTART, dtend: str = _DTEND) -> str:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "SUMMARY:Simple Event",
        f"DTSTART:{dtstart}",
        f"DTEND:{dtend}",
        f"DTSTAMP:{_DTSTAMP}",
        *extra_lines,
        "END:VEVENT",
    ]
    return "\r\n".join(lines) + "\r\n"


def _wrap_vcalendar(vevent_str: str) -> str:
    """Wrap a VEVENT string in a minimal VCALENDAR."""
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//TestSuite//EN\r\n" + vevent_str + "END:VCALENDAR\r\n"
    )


def _parse(ical_str: str) -> ICalGLib.Component:
    return ICalGLib.Component.new_from_string(ical_str)


def _utc(day: int, hour: int) -> datetime:
    return datetime(2026, 3, day, hour, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# GLib.Error stub for is_not_found_error tests
# ---------------------------------------------------------------------------


class _GLibError(GLib.Error):
    """Lightweight GLib.Error subclass with controllable domain/code/message."""

    def __init__(self, domain: str = "", code: int = 0, message: str = ""):
        # GLib.Error.__init__ is skipped: only attribute access is needed and
        # the parent constructor signature varies across gi versions.
        self.domain = domain
        self.code = code
        self.message = message


# ---------------------------------------------------------------------------
# Busy / free inspection
# ---------------------------------------------------------------------------


class TestIsEventCancelled:
    def test_status_cancelled(self):
        assert is_event_cancelled(_parse(_vevent("C1", ("STATUS:CANCELLED",)))) is True

    def test_status_confirmed(self):
        assert is_event_cancelled(_parse(_vevent("C2", ("STATUS:CONFIRMED",)))) is False

    def test_no_status(self):
        assert is_event_cancelled(_parse(_vevent("C3"))) is False

    def test_vcalendar_wrapper(self):
        comp = _parse(_wrap_vcalendar(_vevent("C4", ("STATUS:CANCELLED",))))
        assert is_event_cancelled(comp) is True


class TestIsFreeTime:
    def test_transp_transparent(self):
        assert is_free_time(_parse(_vevent("F1", ("TRANSP:TRANSPARENT",)))) is True

    def test_transp_opaque(self):
        assert is_free_time(_parse(_vevent("F2", ("TRANSP:OPAQUE",)))) is False

    def test_no_transp(self):
        assert is_free_time(_parse(_vevent("F3"))) is False


class TestIsManagedEvent:
    def test_managed_category(self):
        assert is_managed_event(_parse(_vevent("M1", ("CATEGORIES:BUSY-MIRROR-MANAGED",)))) is True

    def test_other_category(self):
        assert is_managed_event(_parse(_vevent("M2", ("CATEGORIES:Work",)))) is False

    def test_no_category(self):
        assert is_managed_event(_parse(_vevent("M3"))) is False


# ---------------------------------------------------------------------------
# TestIsAcceptedByUser
# ---------------------------------------------------------------------------


class TestIsAcceptedByUser:
    _USER = "user@example.com"
    _OTHER = "other@example.com"

    def _meeting(self, uid, attendees=(), organizer=None):
        lines = []
        if organizer:
            lines.append(f"ORGANIZER:mailto:{organizer}")
        for email, partstat in attendees:
            lines.append(f"ATTENDEE;PARTSTAT={partstat};ROLE=REQ-PARTICIPANT:mailto:{email}")
        return _parse(_vevent(uid, tuple(lines)))

    def test_no_attendees_counts_as_accepted(self):
        assert is_accepted_by_user(_parse(_vevent("A1")), self._USER) is True

    def test_accepted(self):
        comp = self._meeting("A2", ((self._OTHER, "ACCEPTED"), (self._USER, "ACCEPTED")))
        assert is_accepted_by_user(comp, self._USER) is True

    def test_needs_action(self):
        comp = self._meeting("A3", ((self._USER, "NEEDS-ACTION"),))
        assert is_accepted_by_user(comp, self._USER) is False

    def test_tentative(self):
        comp = self._meeting("A4", ((self._USER, "TENTATIVE"),))
        assert is_accepted_by_user(comp, self._USER) is False

    def test_declined(self):
        comp = self._meeting("A5", ((self._USER, "DECLINED"), (self._OTHER, "ACCEPTED")))
        assert is_accepted_by_user(comp, self._USER) is False

    def test_user_not_invited(self):
        comp = self._meeting("A6", ((self._OTHER, "ACCEPTED"),))
        assert is_accepted_by_user(comp, self._USER) is False

    def test_organizer_counts_as_accepted(self):
        comp = self._meeting("A7", ((self._OTHER, "NEEDS-ACTION"),), organizer=self._USER)
        assert is_accepted_by_user(comp, self._USER) is True

    def test_unknown_email_cannot_confirm_meeting(self):
        comp = self._meeting("A8", ((self._USER, "ACCEPTED"),))
        assert is_accepted_by_user(comp, None) is False

    def test_case_insensitive_email(self):
        comp = self._meeting("A9", ((self._USER, "ACCEPTED"),))
        assert is_accepted_by_user(comp, "USER@EXAMPLE.COM") is True


# ---------------------------------------------------------------------------
# Time conversion
# ---------------------------------------------------------------------------


class TestTimeConversion:
    def test_utc_time(self):
        t = ICalGLib.Time.new_from_string(_DTSTART)
        assert ical_time_to_datetime(t) == _utc(1, 10)

    def test_date_is_local_midnight(self):
        t = ICalGLib.Time.new_from_string("20260301")
        dt = ical_time_to_datetime(t)
        assert dt.tzinfo is not None
        assert (dt.year, dt.month, dt.day, dt.hour, dt.minute) == (2026, 3, 1, 0, 0)

    def test_sexp_time_is_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert to_sexp_time(datetime(2026, 3, 1, 12, tzinfo=plus_two)) == "20260301T100000Z"


# ---------------------------------------------------------------------------
# TestExpandOccurrences
# ---------------------------------------------------------------------------


class TestExpandOccurrences:
    def test_single_event_in_window(self):
        comp = _parse(_vevent("E1"))
        assert expand_occurrences(comp, _WINDOW_START, _WINDOW_END) == [(_utc(1, 10), _utc(1, 11))]

    def test_single_event_outside_window(self):
        comp = _parse(_vevent("E2"))
        later = _WINDOW_END + timedelta(days=1)
        assert expand_occurrences(comp, _WINDOW_END, later) == []

    def test_event_overlapping_window_start(self):
        comp = _parse(_vevent("E3"))
        assert expand_occurrences(comp, _utc(1, 10) + timedelta(minutes=30), _WINDOW_END) == [
            (_utc(1, 10), _utc(1, 11))
        ]

    def test_duration_instead_of_dtend(self):
        ical = (
            "BEGIN:VEVENT\r\nUID:E4\r\nDTSTART:20260301T100000Z\r\n"
            "DURATION:PT30M\r\nDTSTAMP:20260224T000000Z\r\nEND:VEVENT\r\n"
        )
        [(start, end)] = expand_occurrences(_parse(ical), _WINDOW_START, _WINDOW_END)
        assert end - start == timedelta(minutes=30)

    def test_open_ended_series_started_long_ago(self):
        comp = _parse(
            _vevent(
                "R7",
                ("RRULE:FREQ=DAILY",),
                dtstart="20000301T100000Z",
                dtend="20000301T110000Z",
            )
        )
        occurrences = expand_occurrences(comp, _utc(2, 0), _utc(5, 0))
        assert occurrences == [(_utc(d, 10), _utc(d, 11)) for d in (2, 3, 4)]

    def test_hourly_series_started_a_year_ago(self):
        comp = _parse(
            _vevent(
                "R8",
                ("RRULE:FREQ=HOURLY",),
                dtstart="20250301T100000Z",
                dtend="20250301T103000Z",
            )
        )
        starts = [s for s, _ in expand_occurrences(comp, _utc(2, 0), _utc(2, 3))]
        assert starts == [_utc(2, 0), _utc(2, 1), _utc(2, 2)]

    def test_occurrence_straddling_window_start_is_kept(self):
        comp = _parse(
            _vevent(
                "R9",
                ("RRULE:FREQ=DAILY",),
                dtstart="20200301T230000Z",
                dtend="20200302T010000Z",
            )
        )
        [(start, end)] = expand_occurrences(comp, _utc(2, 0), _utc(2, 12))
        assert (start, end) == (
            datetime(2026, 3, 1, 23, tzinfo=timezone.utc),
            _utc(2, 1),
        )

    def test_long_count_bounded_series_walked_from_dtstart(self):
        comp = _parse(
            _vevent(
                "R10",
                ("RRULE:FREQ=HOURLY;COUNT=20000",),
                dtstart="20250301T100000Z",
                dtend="20250301T103000Z",
            )
        )
        starts = [s for s, _ in expand_occurrences(comp, _utc(2, 0), _utc(2, 2))]
        assert starts == [_utc(2, 0), _utc(2, 1)]

    def test_daily_series(self):
        comp = _parse(_vevent("R1", ("RRULE:FREQ=DAILY;COUNT=5",)))
        occurrences = expand_occurrences(comp, _WINDOW_START, _WINDOW_END)
        assert [s for s, _ in occurrences] == [_utc(d, 10) for d in range(1, 6)]
        assert all(e - s == timedelta(hours=1) for s, e in occurrences)

    def test_series_clipped_to_window(self):
        comp = _parse(_vevent("R2", ("RRULE:FREQ=DAILY;COUNT=10",)))
        occurrences = expand_occurrences(comp, _utc(3, 0), _utc(5, 0))
        assert [s for s, _ in occurrences] == [_utc(3, 10), _utc(4, 10)]

    def test_value_date_exdate_skipped(self):
        comp = _parse(
            _vevent("R3", ("RRULE:FREQ=DAILY;COUNT=5", "EXDATE;VALUE=DATE:20260302"))
        )
        starts = [s for s, _ in expand_occurrences(comp, _WINDOW_START, _WINDOW_END)]
        assert _utc(2, 10) not in starts
        assert len(starts) == 4

    def test_datetime_exdate_skipped(self):
        comp = _parse(_vevent("R4", ("RRULE:FREQ=DAILY;COUNT=3", "EXDATE:20260303T100000Z")))
        starts = [s for s, _ in expand_occurrences(comp, _WINDOW_START, _WINDOW_END)]
        assert starts == [_utc(1, 10), _utc(2, 10)]

    def test_overridden_occurrence_skipped(self):
        comp = _parse(_vevent("R5", ("RRULE:FREQ=DAILY;COUNT=3",)))
        starts = [
            s
            for s, _ in expand_occurrences(
                comp, _WINDOW_START, _WINDOW_END, overridden={_utc(2, 10)}
            )
        ]
        assert starts == [_utc(1, 10), _utc(3, 10)]

    def test_vcalendar_wrapper(self):
        comp = _parse(_wrap_vcalendar(_vevent("R6", ("RRULE:FREQ=WEEKLY;COUNT=2",))))
        starts = [s for s, _ in expand_occurrences(comp, _WINDOW_START, _WINDOW_END)]
        assert starts == [_utc(1, 10), _utc(8, 10)]


# ---------------------------------------------------------------------------
# build_busy_component
# ---------------------------------------------------------------------------


class TestBuildBusyComponent:
    def test_busy_block_properties(self):
        comp = build_busy_component("uid-1", "Busy", _utc(1, 10), _utc(1, 11), "from A")

        assert comp.get_uid() == "uid-1"
        assert get_text(comp, ICalGLib.PropertyKind.SUMMARY_PROPERTY) == "Busy"
        assert get_text(comp, ICalGLib.PropertyKind.DESCRIPTION_PROPERTY) == "from A"
        assert is_managed_event(comp) is True
        assert is_free_time(comp) is False

    def test_busy_block_times_survive_serialisation(self):
        comp = build_busy_component("uid-2", "Busy", _utc(1, 10), _utc(1, 11), "from A")
        reparsed = _parse(comp.as_ical_string())
        assert expand_occurrences(reparsed, _WINDOW_START, _WINDOW_END) == [
            (_utc(1, 10), _utc(1, 11))
        ]


# ---------------------------------------------------------------------------
# TestIsNotFoundError
# ---------------------------------------------------------------------------


class TestIsNotFoundError:
    def test_eds_client_quark_code_1(self):
        assert is_not_found_error(_GLibError("e-cal-client-error-quark", 1, "gone")) is True

    def test_eds_wrong_code(self):
        assert is_not_found_error(_GLibError("e-cal-client-error-quark", 2, "busy")) is False

    def test_m365_error_item_not_found(self):
        e = _GLibError("e-m365-error-quark", 0, "ErrorItemNotFound: item missing")
        assert is_not_found_error(e) is True

    def test_non_glib_object_not_found(self):
        assert is_not_found_error(RuntimeError("Object not found")) is True

    def test_non_glib_other_error(self):
        assert is_not_found_error(RuntimeError("permission denied")) is False
