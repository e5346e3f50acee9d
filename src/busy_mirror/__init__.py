"""Mirror busy time from source calendars into destination calendars via EDS."""

__version__ = "0.1.0"
