from calbridge.adapters.base import CalendarAdapter
from calbridge.config import CALENDAR_BACKEND


def build_adapter(backend: str = None) -> CalendarAdapter:
    """Instantiate the configured CalendarAdapter ('google' or 'ics')."""
    backend = (backend or CALENDAR_BACKEND).lower()

    if backend == 'google':
        from calbridge.adapters.google_calendar import GoogleCalendarAdapter
        return GoogleCalendarAdapter()
    if backend == 'ics':
        from calbridge.adapters.ics_file import IcsFileAdapter
        return IcsFileAdapter()

    raise ValueError(f"Unknown CALENDAR_BACKEND '{backend}' (expected 'google' or 'ics')")
