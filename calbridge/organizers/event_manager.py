#!/usr/bin/env python3
"""
Event Manager

User-facing event operations. Every write lands in the local store first;
the provider is told synchronously when possible, and anything it can't
accept right now is left as pending_push for the next sync run. A provider
outage never fails the user's request.
"""

import logging
from typing import Dict, List, Optional

from calbridge.adapters.base import (
    DEFAULT_LOCAL_CALENDAR, CalendarAdapter, EventFields
)
from calbridge.core.db_manager import DatabaseManager
from calbridge.core.schema import (
    DATETIME_COLUMNS, EDITABLE_COLUMNS, SYNC_STATUS_PENDING_PUSH, SYNC_STATUS_SYNCED
)
from calbridge.core.timeutil import isoformat_z, parse_instant, utc_now
from calbridge.errors import EventNotFoundError, ValidationError

REQUIRED_FIELDS = ('title', 'start_time', 'end_time')
TEXT_FIELDS = ('description', 'location', 'calendar_name', 'business_id')


def serialize_event(event: Dict) -> Dict:
    """JSON-ready copy of a stored event with ISO-8601 UTC instants."""
    data = dict(event)
    for column in DATETIME_COLUMNS:
        if column in data:
            data[column] = isoformat_z(data[column])
    return data


def _parse_time_field(name: str, value):
    try:
        parsed = parse_instant(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO-8601 timestamp")
    if parsed is None:
        raise ValidationError(f"{name} is required")
    return parsed


def _clean_fields(payload: Dict, partial: bool) -> Dict:
    """
    Validate a create (partial=False) or update (partial=True) payload.

    Updates ignore keys that are absent or null, mirroring "keep the
    existing value".
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    if not partial:
        missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    fields = {}

    if payload.get('title') is not None:
        title = payload['title']
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title must be a non-empty string")
        fields['title'] = title.strip()

    for name in ('start_time', 'end_time'):
        if payload.get(name) is not None:
            fields[name] = _parse_time_field(name, payload[name])

    if payload.get('all_day') is not None:
        if not isinstance(payload['all_day'], bool):
            raise ValidationError("all_day must be a boolean")
        fields['all_day'] = payload['all_day']

    for name in TEXT_FIELDS:
        if payload.get(name) is not None:
            if not isinstance(payload[name], str):
                raise ValidationError(f"{name} must be a string")
            fields[name] = payload[name]

    return fields


def _check_order(start, end):
    if end < start:
        raise ValidationError("end_time must not be before start_time")


class EventManager:
    """Create, read, update and delete events, keeping the provider informed."""

    def __init__(self, db: DatabaseManager, adapter: CalendarAdapter):
        self.logger = logging.getLogger('event-manager')
        self.db = db
        self.adapter = adapter

    def create_event(self, payload: Dict, created_by: str) -> Dict:
        """
        Direct create: store the event, then push it once.

        The returned event is `synced` with an external_id if the provider
        accepted it, otherwise `pending_push` with no external_id.
        """
        fields = _clean_fields(payload, partial=False)
        _check_order(fields['start_time'], fields['end_time'])

        fields.setdefault('all_day', False)
        fields.setdefault('calendar_name', DEFAULT_LOCAL_CALENDAR)

        event = self.db.insert_event({
            **fields,
            'external_id': None,
            'sync_status': SYNC_STATUS_PENDING_PUSH,
            'created_by': created_by,
        })
        self.logger.info(f"➕ Created event {event['id']}: {event['title']}")

        try:
            external_id = self.adapter.create_event(EventFields.from_event(event), event['calendar_name'])
        except Exception as e:
            self.logger.warning(f"⚠️  Provider create failed for {event['title']}, "
                                f"left pending_push: {e}")
            return event

        changes = {
            'external_id': external_id,
            'sync_status': SYNC_STATUS_SYNCED,
            'last_synced_at': utc_now(),
        }
        try:
            recorded = self.db.update_event(event['id'], changes, label=event['title'], expected={
                'sync_status': SYNC_STATUS_PENDING_PUSH,
                'external_id': None,
            })
        except Exception as e:
            # Next sync run will retry the push
            self.logger.error(f"❌ Created {external_id} upstream but failed to record it: {e}")
            return event

        if not recorded:
            # A sync run pushed (or someone removed) the row while we were creating it
            self.logger.warning(f"⚠️  {event['title']} was pushed elsewhere, removing copy {external_id}")
            try:
                self.adapter.delete_event(external_id, event['calendar_name'])
            except Exception as e:
                self.logger.warning(f"⚠️  Could not remove duplicate provider copy {external_id}: {e}")
            current = self.db.get_event(event['id'])
            return current if current is not None else event

        event.update(changes)
        self.logger.info(f"  ⬆️  Pushed {event['title']} → {external_id}")
        return event

    def get_event(self, event_id: str) -> Dict:
        event = self.db.get_event(event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        return event

    def list_events(self, start=None, end=None, calendar_name: Optional[str] = None) -> List[Dict]:
        """Events starting inside [start, end]; bounds may be ISO strings or datetimes."""
        try:
            start = parse_instant(start)
            end = parse_instant(end)
        except (TypeError, ValueError):
            raise ValidationError("start and end must be ISO-8601 timestamps")
        return self.db.list_events(start=start, end=end, calendar_name=calendar_name)

    def update_event(self, event_id: str, payload: Dict) -> Dict:
        """
        Apply a user edit and propagate it to the provider.

        Events already on the provider are updated there right away; if that
        fails they are marked pending_push so the next sync run retries.
        Events never pushed keep their current status.
        """
        existing = self.get_event(event_id)
        changes = {k: v for k, v in _clean_fields(payload, partial=True).items()
                   if k in EDITABLE_COLUMNS}

        merged = {**existing, **changes}
        _check_order(merged['start_time'], merged['end_time'])

        if existing.get('external_id'):
            try:
                # Update on the calendar the event was pushed to
                self.adapter.update_event(existing['external_id'],
                                          EventFields.from_event(merged),
                                          existing['calendar_name'])
                changes['sync_status'] = SYNC_STATUS_SYNCED
                changes['last_synced_at'] = utc_now()
            except Exception as e:
                self.logger.warning(f"⚠️  Provider update failed for {existing['title']}, "
                                    f"marked pending_push: {e}")
                changes['sync_status'] = SYNC_STATUS_PENDING_PUSH

        changes['updated_at'] = utc_now()
        if not self.db.update_event(event_id, changes, label=existing['title']):
            raise EventNotFoundError(f"Event {event_id} not found")

        self.logger.info(f"✏️  Updated event {event_id}: {sorted(changes)}")
        return self.get_event(event_id)

    def delete_event(self, event_id: str) -> bool:
        """Delete upstream when possible, then always delete locally."""
        existing = self.get_event(event_id)

        if existing.get('external_id'):
            try:
                self.adapter.delete_event(existing['external_id'], existing['calendar_name'])
            except Exception as e:
                # Next sync run would resurrect it if the provider still has it
                self.logger.warning(f"⚠️  Provider delete failed for {existing['title']}: {e}")

        if not self.db.delete_event(event_id, label=existing['title']):
            raise EventNotFoundError(f"Event {event_id} not found")

        self.logger.info(f"➖ Deleted event {event_id}: {existing['title']}")
        return True
