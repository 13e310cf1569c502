#!/usr/bin/env python3
"""
Calendar Reconciliation Service

Brings the local event store and the external calendar provider back in
line, in strictly ordered phases:

1. Snapshot the provider (every configured calendar, one time window)
2. Snapshot the whole local store
3. Pull: insert unknown provider events, refresh changed ones
   (events still waiting to be pushed keep their local content)
4. Push: send pending local events to the provider
5. Delete: drop local events whose provider copy has disappeared

Only a failure to read the local snapshot aborts a run. Everything else
is recorded per item in the result and the run moves on.

NOTE: deletion trusts the provider snapshot to cover every event that
carries an external_id. Events outside [now - days_back, now + days_forward]
look deleted upstream and are removed locally; these are logged as warnings.
"""

import logging
from typing import Dict, Iterable, List, Optional

from calbridge.adapters.base import (
    CalendarAdapter, EventFields, ExternalEvent, SyncWindow, to_local_calendar, to_provider_calendar,
    window_for
)
from calbridge.config import (
    DEFAULT_SYNC_CALENDARS, SYNC_LOCK_KEY, SYNC_LOOKAHEAD_DAYS, SYNC_LOOKBACK_DAYS, SYNC_USER
)
from calbridge.core.db_manager import DatabaseManager
from calbridge.core.schema import SYNC_STATUS_PENDING_PUSH, SYNC_STATUS_SYNCED
from calbridge.core.timeutil import utc_now
from calbridge.errors import ValidationError
from calbridge.sync.change_detector import has_changed
from calbridge.sync.results import SyncResult


def _validate_days(name: str, value, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def _validate_calendars(calendars) -> List[str]:
    if calendars is None or (isinstance(calendars, (list, tuple)) and not calendars):
        return list(DEFAULT_SYNC_CALENDARS)
    if not isinstance(calendars, (list, tuple)):
        raise ValidationError("calendars must be a list of calendar names")
    if not all(isinstance(c, str) and c.strip() for c in calendars):
        raise ValidationError("calendars must be a list of calendar names")
    return [c.strip() for c in calendars]


class CalendarReconciler:
    """Two-way reconciliation between the event store and one calendar provider."""

    def __init__(self, db: DatabaseManager, adapter: CalendarAdapter,
                 lock_key: str = SYNC_LOCK_KEY, sync_user: str = SYNC_USER):
        self.logger = logging.getLogger('calendar-reconciler')
        self.db = db
        self.adapter = adapter
        self.lock_key = lock_key
        self.sync_user = sync_user

    def run_sync(self, calendars: Optional[Iterable[str]] = None,
                 days_back: Optional[int] = None,
                 days_forward: Optional[int] = None) -> SyncResult:
        """
        Run one reconciliation.

        Raises ValidationError for bad arguments, SyncInProgressError if
        another run holds the sync lock, and StoreFetchError if the local
        snapshot can't be read. Per-item failures end up in result.errors.
        """
        calendars = _validate_calendars(calendars)
        days_back = _validate_days('daysBack', days_back, SYNC_LOOKBACK_DAYS)
        days_forward = _validate_days('daysForward', days_forward, SYNC_LOOKAHEAD_DAYS)

        with self.db.advisory_lock(self.lock_key, blocking=False):
            return self._run(calendars, window_for(days_back, days_forward))

    def _run(self, calendars: List[str], window: SyncWindow) -> SyncResult:
        result = SyncResult()

        self.logger.info("=" * 60)
        self.logger.info(f"🚀 Starting calendar sync: {', '.join(calendars)}")
        self.logger.info(f"   Window: {window.start.isoformat()} → {window.end.isoformat()}")
        self.logger.info("=" * 60)

        external_events = self.fetch_external_snapshot(calendars, window)

        # The one fatal step: StoreFetchError propagates to the caller
        local_events = self.db.fetch_all_events()
        self.logger.info(f"  Found {len(local_events)} events in local store")

        local_by_external_id = {
            event['external_id']: event
            for event in local_events
            if event.get('external_id')
        }
        external_by_id = {event.external_id: event for event in external_events}

        self.pull_phase(external_events, local_by_external_id, result)
        self.push_phase(local_events, result)
        self.deletion_phase(local_events, external_by_id, calendars, window, result)

        result.synced_at = utc_now()
        self._log_summary(result)
        return result

    def fetch_external_snapshot(self, calendars: List[str], window: SyncWindow) -> List[ExternalEvent]:
        """Phase 1. Calendars that fail to list simply contribute nothing."""
        self.logger.info("📥 Fetching provider events...")
        events = self.adapter.list_events(calendars, window)
        self.logger.info(f"  Found {len(events)} provider events")
        return events

    def pull_phase(self, external_events: List[ExternalEvent],
                   local_by_external_id: Dict[str, Dict], result: SyncResult):
        """Phase 3. Provider content wins unless the local row is pending_push."""
        self.logger.info("🔄 Pulling provider changes...")

        for external in external_events:
            existing = local_by_external_id.get(external.external_id)

            if existing is None:
                try:
                    inserted = self.db.insert_event({
                        'title': external.title,
                        'description': external.description,
                        'start_time': external.start,
                        'end_time': external.end,
                        'all_day': external.all_day,
                        'location': external.location,
                        'calendar_name': to_local_calendar(external.calendar_name),
                        'external_id': external.external_id,
                        'sync_status': SYNC_STATUS_SYNCED,
                        'last_synced_at': utc_now(),
                        'created_by': self.sync_user,
                    })
                    # A repeated id later in this snapshot must match, not insert again
                    local_by_external_id[external.external_id] = inserted
                    result.pulled += 1
                    self.logger.debug(f"  ➕ Pulled: {external.title}")
                except Exception as e:
                    self.logger.error(f"  ❌ Failed to pull event {external.title}: {e}")
                    result.add_error(f"Failed to pull event: {external.title} ({e})")
                continue

            if not has_changed(existing, external):
                continue

            if existing.get('sync_status') == SYNC_STATUS_PENDING_PUSH:
                # Local edits win until they've been pushed
                self.logger.debug(f"  ⏸️  Skipped pending local event: {existing.get('title')}")
                continue

            try:
                applied = self.db.update_event(existing['id'], {
                    'title': external.title,
                    'description': external.description,
                    'start_time': external.start,
                    'end_time': external.end,
                    'all_day': external.all_day,
                    'location': external.location,
                    'sync_status': SYNC_STATUS_SYNCED,
                    'last_synced_at': utc_now(),
                }, label=external.title, expected={'sync_status': SYNC_STATUS_SYNCED})
                if not applied:
                    self.logger.debug(f"  ⏸️  {existing.get('title')} was edited locally during the run")
                    continue
                result.updated += 1
                self.logger.debug(f"  ✏️  Updated: {external.title}")
            except Exception as e:
                self.logger.error(f"  ❌ Failed to update event {external.title}: {e}")
                result.add_error(f"Failed to update event: {external.title} ({e})")

    def push_phase(self, local_events: List[Dict], result: SyncResult):
        """
        Phase 4. Send every pending_push row to the provider.

        Rows without an external_id are created; rows that already have one
        carry a local edit that failed to propagate and are updated in place.
        Each row is re-read first, and the synced flip only lands if the row
        is still the pending row that was pushed, so a direct create that
        finished in the meantime is not pushed twice. Failures leave the row
        pending for the next run.
        """
        pending = [e for e in local_events if e.get('sync_status') == SYNC_STATUS_PENDING_PUSH]
        self.logger.info(f"📤 Pushing {len(pending)} pending events...")

        for snapshot_event in pending:
            title = snapshot_event.get('title', 'Untitled')

            try:
                event = self.db.get_event(snapshot_event['id'])
            except Exception as e:
                self.logger.error(f"  ❌ Failed to re-read pending event {title}: {e}")
                result.add_error(f"Failed to push event: {title} ({e})")
                continue

            if event is None or event.get('sync_status') != SYNC_STATUS_PENDING_PUSH:
                self.logger.debug(f"  ⏭️  {title} was pushed or removed since the snapshot")
                continue

            title = event.get('title', 'Untitled')
            previous_id = event.get('external_id')
            fields = EventFields.from_event(event)

            try:
                if previous_id:
                    self.adapter.update_event(previous_id, fields, event['calendar_name'])
                    external_id = previous_id
                else:
                    external_id = self.adapter.create_event(fields, event['calendar_name'])
            except Exception as e:
                self.logger.warning(f"  ⚠️  Failed to push event {title}: {e}")
                result.add_error(f"Failed to push event: {title} ({e})")
                continue

            try:
                recorded = self.db.update_event(event['id'], {
                    'external_id': external_id,
                    'sync_status': SYNC_STATUS_SYNCED,
                    'last_synced_at': utc_now(),
                }, label=title, expected={
                    'sync_status': SYNC_STATUS_PENDING_PUSH,
                    'external_id': previous_id,
                })
            except Exception as e:
                self.logger.error(f"  ❌ Pushed {title} as {external_id} but failed to record it: {e}")
                result.add_error(f"Failed to record pushed event: {title} ({e})")
                continue

            if not recorded:
                self.logger.warning(f"  ⚠️  {title} changed while being pushed")
                if not previous_id:
                    self._discard_provider_copy(external_id, event)
                continue

            result.pushed += 1
            self.logger.debug(f"  ⬆️  Pushed: {title} → {external_id}")

    def _discard_provider_copy(self, external_id: str, event: Dict):
        """Remove a provider event no local row ended up pointing at."""
        try:
            self.adapter.delete_event(external_id, event['calendar_name'])
            self.logger.info(f"  🧹 Removed duplicate provider copy {external_id} of {event.get('title')}")
        except Exception as e:
            self.logger.warning(f"  ⚠️  Could not remove duplicate provider copy {external_id}: {e}")

    def deletion_phase(self, local_events: List[Dict], external_by_id: Dict[str, ExternalEvent],
                       calendars: List[str], window: SyncWindow, result: SyncResult):
        """Phase 5. Hard-delete local rows whose external_id vanished from the snapshot."""
        candidates = [
            event for event in local_events
            if event.get('external_id') and event['external_id'] not in external_by_id
        ]
        self.logger.info(f"🗑️  Removing {len(candidates)} events deleted upstream...")

        for event in candidates:
            title = event.get('title', 'Untitled')

            if event.get('start_time') and not window.contains(event['start_time']):
                self.logger.warning(f"  ⚠️  {title} ({event['external_id']}) is outside the sync "
                                    f"window and is being deleted as missing upstream")

            provider_calendar = to_provider_calendar(event.get('calendar_name'))
            if provider_calendar not in calendars:
                self.logger.warning(f"  ⚠️  {title} ({event['external_id']}) belongs to {provider_calendar}, "
                                    f"which this run did not fetch, and is being deleted as missing upstream")

            try:
                if self.db.delete_event(event['id'], label=title):
                    result.deleted += 1
                    self.logger.debug(f"  ➖ Deleted: {title}")
            except Exception as e:
                self.logger.error(f"  ❌ Failed to delete event {title}: {e}")
                result.add_error(f"Failed to sync deletion: {title} ({e})")

    def _log_summary(self, result: SyncResult):
        self.logger.info("=" * 60)
        self.logger.info("📊 CALENDAR SYNC SUMMARY")
        self.logger.info(f"  Pulled:  {result.pulled}")
        self.logger.info(f"  Updated: {result.updated}")
        self.logger.info(f"  Pushed:  {result.pushed}")
        self.logger.info(f"  Deleted: {result.deleted}")
        self.logger.info(f"  Errors:  {len(result.errors)}")
        for error in result.errors:
            self.logger.info(f"    - {error}")
        self.logger.info("=" * 60)
