"""
External calendar port.

The reconciler and the event API only talk to a CalendarAdapter. How an
adapter reaches its provider (REST calls, files on disk) and how it escapes
or encodes event bodies is its own business.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from calbridge.config import MAX_FETCH_WORKERS
from calbridge.core.timeutil import to_utc, utc_now

LOCAL_CALENDARS = ('Family', 'Work', 'Personal')
DEFAULT_LOCAL_CALENDAR = 'Personal'
DEFAULT_PROVIDER_CALENDAR = 'Home'

# Local calendar -> provider calendar. Not injective: Family and Personal
# both land on Home, so a round trip through the provider can change the
# local calendar of a Personal event.
LOCAL_TO_PROVIDER = {
    'Family': 'Home',
    'Work': 'Work',
    'Personal': 'Home',
}

# Provider calendar -> local calendar for pulled events
PROVIDER_TO_LOCAL = {
    'Home': 'Family',
    'Work': 'Work',
    'Personal': 'Personal',
}


def to_provider_calendar(local_name: Optional[str]) -> str:
    return LOCAL_TO_PROVIDER.get(local_name, DEFAULT_PROVIDER_CALENDAR)


def to_local_calendar(provider_name: Optional[str]) -> str:
    return PROVIDER_TO_LOCAL.get(provider_name, DEFAULT_LOCAL_CALENDAR)


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive time range fetched from the provider."""
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        instant = to_utc(instant)
        return to_utc(self.start) <= instant <= to_utc(self.end)


def window_for(days_back: int, days_forward: int, now: datetime = None) -> SyncWindow:
    now = to_utc(now) if now else utc_now()
    return SyncWindow(start=now - timedelta(days=days_back),
                      end=now + timedelta(days=days_forward))


@dataclass
class ExternalEvent:
    """An event as listed by the provider for one of its calendars."""
    external_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    calendar_name: Optional[str] = None


@dataclass
class EventFields:
    """Content sent to the provider when creating or updating an event."""
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_event(cls, event: Dict) -> 'EventFields':
        return cls(
            title=event['title'],
            start=event['start_time'],
            end=event['end_time'],
            all_day=bool(event.get('all_day')),
            description=event.get('description'),
            location=event.get('location'),
        )


class CalendarAdapter(ABC):
    """Boundary between canonical events and one external calendar provider."""

    logger_name = 'calendar-adapter'

    def __init__(self, max_fetch_workers: int = MAX_FETCH_WORKERS):
        self.logger = logging.getLogger(self.logger_name)
        self.max_fetch_workers = max_fetch_workers

    def list_events(self, calendar_names: Iterable[str], window: SyncWindow) -> List[ExternalEvent]:
        """
        Best-effort listing across provider calendars.

        Each calendar is fetched independently; one that fails is logged and
        contributes nothing, the others still come back.
        """
        names = list(dict.fromkeys(calendar_names))
        if not names:
            return []

        results: Dict[str, List[ExternalEvent]] = {}
        workers = max(1, min(self.max_fetch_workers, len(names)))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.list_calendar_events, name, window): name
                for name in names
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                    self.logger.info(f"  Found {len(results[name])} events on {name}")
                except Exception as e:
                    self.logger.error(f"❌ Failed to fetch events from {name}: {e}")

        # Keep caller order so snapshots are deterministic
        events: List[ExternalEvent] = []
        for name in names:
            events.extend(results.get(name, []))
        return events

    @abstractmethod
    def list_calendar_events(self, calendar_name: str, window: SyncWindow) -> List[ExternalEvent]:
        """List one provider calendar. Raises AdapterError on failure."""

    @abstractmethod
    def create_event(self, fields: EventFields, calendar_name: str) -> str:
        """
        Create an event on the provider calendar that `calendar_name` (a local
        calendar name) maps to. Returns the provider's id; raises AdapterError.
        """

    @abstractmethod
    def update_event(self, external_id: str, fields: EventFields, calendar_name: str) -> None:
        """Overwrite an existing provider event. Raises AdapterError."""

    @abstractmethod
    def delete_event(self, external_id: str, calendar_name: str) -> None:
        """Remove a provider event. Raises AdapterError."""

