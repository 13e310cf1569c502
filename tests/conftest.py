"""Shared fixtures: an in-memory event store and a scriptable calendar adapter."""

from datetime import datetime

import pytest
import pytz

from calbridge.adapters.base import CalendarAdapter, ExternalEvent, to_provider_calendar
from calbridge.core.db_manager import DatabaseManager
from calbridge.core.schema import SYNC_STATUS_PENDING_PUSH, SYNC_STATUS_SYNCED
from calbridge.errors import AdapterError


def utc(*args) -> datetime:
    return pytz.UTC.localize(datetime(*args))


class FakeAdapter(CalendarAdapter):
    """In-memory provider. Calendars are keyed by provider name."""

    logger_name = 'fake-calendar'

    def __init__(self):
        super().__init__(max_fetch_workers=2)
        self.calendars = {'Home': {}, 'Work': {}}
        self.failing_calendars = set()
        self.fail_writes = False
        self.calls = []
        self._next_id = 0

    def add(self, provider_name: str, external_id: str, title: str, start, end, **extra):
        event = ExternalEvent(external_id=external_id, title=title, start=start, end=end,
                              calendar_name=provider_name, **extra)
        self.calendars.setdefault(provider_name, {})[external_id] = event
        return event

    def writes(self):
        return [call for call in self.calls if call[0] != 'list']

    def list_calendar_events(self, calendar_name, window):
        self.calls.append(('list', calendar_name))
        if calendar_name in self.failing_calendars:
            raise AdapterError(f"{calendar_name} unavailable", calendar_name=calendar_name)
        return list(self.calendars.get(calendar_name, {}).values())

    def _check_writes(self):
        if self.fail_writes:
            raise AdapterError("provider unreachable")

    def create_event(self, fields, calendar_name):
        self.calls.append(('create', fields.title, calendar_name))
        self._check_writes()
        self._next_id += 1
        external_id = f"EXT-{self._next_id}"
        self.add(to_provider_calendar(calendar_name), external_id, fields.title,
                 fields.start, fields.end, all_day=fields.all_day,
                 description=fields.description, location=fields.location)
        return external_id

    def update_event(self, external_id, fields, calendar_name):
        self.calls.append(('update', external_id, calendar_name))
        self._check_writes()
        self.add(to_provider_calendar(calendar_name), external_id, fields.title,
                 fields.start, fields.end, all_day=fields.all_day,
                 description=fields.description, location=fields.location)

    def delete_event(self, external_id, calendar_name):
        self.calls.append(('delete', external_id, calendar_name))
        self._check_writes()
        self.calendars.get(to_provider_calendar(calendar_name), {}).pop(external_id, None)


@pytest.fixture
def db():
    manager = DatabaseManager('sqlite://')
    manager.create_schema()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def make_event(db):
    """Insert a local row with sensible defaults and return it."""
    def _make(title='Local event', external_id=None, sync_status=None, **values):
        if sync_status is None:
            sync_status = SYNC_STATUS_SYNCED if external_id else SYNC_STATUS_PENDING_PUSH
        row = {
            'title': title,
            'start_time': utc(2025, 3, 1, 14, 0),
            'end_time': utc(2025, 3, 1, 15, 0),
            'calendar_name': 'Personal',
            'external_id': external_id,
            'sync_status': sync_status,
            'created_by': 'tester',
        }
        row.update(values)
        return db.insert_event(row)
    return _make
