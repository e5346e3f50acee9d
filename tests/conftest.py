"""
Shared pytest fixtures and event helpers.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from busy_mirror.models import CalendarEvent
from busy_mirror.models import DestinationConfig
from busy_mirror.models import MirrorConfig
from busy_mirror.models import SourceRef

# Fixed "now" for every run so windows are deterministic.
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

DEST_CAL_ID = "personal-calendar-test"
SOURCE_A = "A"
SOURCE_B = "B"


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """Return NOW's date shifted by ``day`` days, at hour:minute UTC."""
    base = NOW.replace(hour=0, minute=0) + timedelta(days=day)
    return base.replace(hour=hour, minute=minute)


def make_event(
    start: datetime,
    end: datetime,
    title: str = "Test Event",
    description: str = "",
    uid: str = "",
    accepted: bool = True,
    managed: bool = False,
) -> CalendarEvent:
    """Return a CalendarEvent; the uid defaults to one derived from the slot."""
    return CalendarEvent(
        start=start,
        end=end,
        title=title,
        description=description,
        uid=uid or f"{title}-{start:%Y%m%dT%H%M}",
        accepted=accepted,
        managed=managed,
    )


def make_destination(*source_ids: str, dest_id: str = DEST_CAL_ID, **kwargs) -> DestinationConfig:
    return DestinationConfig(
        id=dest_id, sources=[SourceRef(sid) for sid in source_ids], **kwargs
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def mirror_config():
    return MirrorConfig(destinations=[make_destination(SOURCE_A, SOURCE_B)], look_ahead_days=30)
