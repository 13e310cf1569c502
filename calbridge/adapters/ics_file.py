"""
ICS file adapter.

Each provider calendar is a `<name>.ics` file in one directory. Handy for
running CalBridge without a Google account, and for exporting the store to
clients that subscribe to .ics files.
"""

import threading
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional

import pytz
from icalendar import Calendar, Event as ICalEvent

from calbridge.adapters.base import (
    CalendarAdapter, EventFields, ExternalEvent, SyncWindow, to_provider_calendar
)
from calbridge.config import ICS_CALENDAR_DIR
from calbridge.core.timeutil import parse_instant, utc_now
from calbridge.errors import AdapterError


def _component_time(component, key: str) -> Optional[datetime]:
    prop = component.get(key)
    if prop is None:
        return None
    return parse_instant(prop.dt)


def _is_all_day(component) -> bool:
    prop = component.get('dtstart')
    return prop is not None and isinstance(prop.dt, date) and not isinstance(prop.dt, datetime)


class IcsFileAdapter(CalendarAdapter):
    """CalendarAdapter reading and writing local .ics files."""

    logger_name = 'ics-calendar'

    def __init__(self, directory: str = None, **kwargs):
        super().__init__(**kwargs)
        self.directory = Path(directory or ICS_CALENDAR_DIR)
        self._write_lock = threading.Lock()

    def path_for(self, provider_name: str) -> Path:
        return self.directory / f"{provider_name}.ics"

    def _read_calendar(self, provider_name: str) -> Calendar:
        path = self.path_for(provider_name)
        try:
            return Calendar.from_ical(path.read_bytes())
        except FileNotFoundError as e:
            raise AdapterError(f"Calendar file not found: {path}", calendar_name=provider_name) from e
        except (OSError, ValueError) as e:
            raise AdapterError(f"Unreadable calendar file {path}: {e}", calendar_name=provider_name) from e

    def _load_or_new(self, provider_name: str) -> Calendar:
        if not self.path_for(provider_name).exists():
            cal = Calendar()
            cal.add('prodid', '-//CalBridge//Calendar Sync//EN')
            cal.add('version', '2.0')
            cal.add('calscale', 'GREGORIAN')
            cal.add('x-wr-calname', provider_name)
            return cal
        return self._read_calendar(provider_name)

    def _write_calendar(self, provider_name: str, cal: Calendar):
        path = self.path_for(provider_name)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix('.ics.tmp')
            tmp_path.write_bytes(cal.to_ical())
            tmp_path.replace(path)
        except OSError as e:
            raise AdapterError(f"Failed to write {path}: {e}", calendar_name=provider_name) from e

    def list_calendar_events(self, calendar_name: str, window: SyncWindow) -> List[ExternalEvent]:
        cal = self._read_calendar(calendar_name)

        events = []
        for component in cal.walk('VEVENT'):
            uid = str(component.get('uid', '')).strip()
            start = _component_time(component, 'dtstart')
            end = _component_time(component, 'dtend') or start
            if not uid or start is None:
                continue

            # Same overlap rule the Google API applies to timeMin/timeMax
            if end < window.start or start > window.end:
                continue

            events.append(ExternalEvent(
                external_id=uid,
                title=str(component.get('summary', 'Untitled')),
                start=start,
                end=end,
                all_day=_is_all_day(component),
                description=str(component.get('description')) if component.get('description') else None,
                location=str(component.get('location')) if component.get('location') else None,
                calendar_name=calendar_name,
            ))
        return events

    @staticmethod
    def _build_component(uid: str, fields: EventFields) -> ICalEvent:
        event = ICalEvent()
        event.add('uid', uid)
        event.add('summary', fields.title)

        if fields.all_day:
            start_date = fields.start.date()
            end_date = fields.end.date()
            if end_date <= start_date:
                end_date = start_date + timedelta(days=1)
            event.add('dtstart', start_date)
            event.add('dtend', end_date)
        else:
            event.add('dtstart', fields.start.astimezone(pytz.UTC))
            event.add('dtend', fields.end.astimezone(pytz.UTC))

        if fields.description:
            event.add('description', fields.description)
        if fields.location:
            event.add('location', fields.location)

        now = utc_now()
        event.add('dtstamp', now)
        event.add('last-modified', now)
        return event

    @staticmethod
    def _without_uid(cal: Calendar, uid: str):
        """Split `cal` into a copy without the VEVENT `uid` and a found flag."""
        kept = Calendar()
        for key, value in cal.items():
            kept[key] = value

        found = False
        for component in cal.subcomponents:
            if component.name == 'VEVENT' and str(component.get('uid', '')) == uid:
                found = True
                continue
            kept.add_component(component)
        return kept, found

    def create_event(self, fields: EventFields, calendar_name: str) -> str:
        provider_name = to_provider_calendar(calendar_name)
        uid = f"{uuid.uuid4()}@calbridge"

        with self._write_lock:
            cal = self._load_or_new(provider_name)
            cal.add_component(self._build_component(uid, fields))
            self._write_calendar(provider_name, cal)

        self.logger.debug(f"  Created {uid} in {self.path_for(provider_name)}")
        return uid

    def update_event(self, external_id: str, fields: EventFields, calendar_name: str) -> None:
        provider_name = to_provider_calendar(calendar_name)

        with self._write_lock:
            cal, found = self._without_uid(self._read_calendar(provider_name), external_id)
            if not found:
                raise AdapterError(f"Event {external_id} not found in {provider_name}",
                                   calendar_name=provider_name)
            cal.add_component(self._build_component(external_id, fields))
            self._write_calendar(provider_name, cal)

    def delete_event(self, external_id: str, calendar_name: str) -> None:
        provider_name = to_provider_calendar(calendar_name)

        with self._write_lock:
            if not self.path_for(provider_name).exists():
                return
            cal, found = self._without_uid(self._read_calendar(provider_name), external_id)
            if found:
                self._write_calendar(provider_name, cal)
