"""Tests for calbridge.sync.reconciler: pull, push and deletion phases."""

import threading

import pytest
from sqlalchemy.exc import OperationalError

from calbridge.adapters.base import EventFields
from calbridge.core.schema import SYNC_STATUS_PENDING_PUSH, SYNC_STATUS_SYNCED
from calbridge.errors import PerItemStoreError, StoreFetchError, SyncInProgressError, ValidationError
from calbridge.sync.reconciler import CalendarReconciler

from conftest import utc


@pytest.fixture
def reconciler(db, adapter):
    return CalendarReconciler(db, adapter)


def _by_external_id(db):
    return {e['external_id']: e for e in db.fetch_all_events() if e['external_id']}


# ------------------------------------------------------------------
# Pull
# ------------------------------------------------------------------


def test_new_external_event_is_pulled(db, adapter, reconciler):
    adapter.add('Home', 'X1', 'Dentist', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    result = reconciler.run_sync(['Home'])

    assert result.pulled == 1
    rows = db.fetch_all_events()
    assert len(rows) == 1
    assert rows[0]['external_id'] == 'X1'
    assert rows[0]['sync_status'] == SYNC_STATUS_SYNCED
    assert rows[0]['title'] == 'Dentist'
    assert rows[0]['created_by'] == 'calendar-sync'
    assert rows[0]['last_synced_at'] is not None


def test_pulled_events_use_inverse_calendar_mapping(db, adapter, reconciler):
    adapter.add('Home', 'H1', 'Soccer', utc(2025, 3, 1, 9), utc(2025, 3, 1, 10))
    adapter.add('Work', 'W1', 'Standup', utc(2025, 3, 1, 9), utc(2025, 3, 1, 10))

    reconciler.run_sync(['Home', 'Work'])

    rows = _by_external_id(db)
    assert rows['H1']['calendar_name'] == 'Family'
    assert rows['W1']['calendar_name'] == 'Work'


def test_pull_is_idempotent(db, adapter, reconciler):
    adapter.add('Home', 'X1', 'Dentist', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    reconciler.run_sync(['Home'])
    second = reconciler.run_sync(['Home'])

    assert second.pulled == 0
    assert second.updated == 0
    assert len(db.fetch_all_events()) == 1


def test_duplicate_external_id_in_snapshot_is_inserted_once(db, adapter, reconciler):
    adapter.add('Home', 'DUP', 'Shared', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))
    adapter.add('Work', 'DUP', 'Shared', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    result = reconciler.run_sync(['Home', 'Work'])

    assert result.pulled == 1
    assert result.errors == []
    assert len(db.fetch_all_events()) == 1


def test_changed_external_title_updates_synced_row(db, adapter, reconciler, make_event):
    make_event(title='Old title', external_id='X1')
    adapter.add('Home', 'X1', 'New title', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    result = reconciler.run_sync(['Home'])

    assert result.updated == 1
    assert _by_external_id(db)['X1']['title'] == 'New title'


def test_subsecond_difference_is_not_a_change(db, adapter, reconciler, make_event):
    make_event(title='Dentist', external_id='X1')
    adapter.add('Home', 'X1', 'Dentist',
                utc(2025, 3, 1, 14, 0, 0, 500000), utc(2025, 3, 1, 15, 0, 0, 250000))

    result = reconciler.run_sync(['Home'])

    assert result.updated == 0


def test_pending_row_is_not_overwritten_by_pull(db, adapter, reconciler, make_event):
    make_event(title='My local edit', external_id='X1', sync_status=SYNC_STATUS_PENDING_PUSH)
    adapter.add('Home', 'X1', 'Provider title', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    result = reconciler.run_sync(['Home'])

    assert result.updated == 0
    row = _by_external_id(db)['X1']
    assert row['title'] == 'My local edit'
    # Push phase sends the local edit upstream
    assert ('update', 'X1', 'Personal') in adapter.calls
    assert adapter.calendars['Home']['X1'].title == 'My local edit'
    assert row['sync_status'] == SYNC_STATUS_SYNCED


def test_pending_row_keeps_content_when_push_fails(db, adapter, reconciler, make_event):
    make_event(title='My local edit', external_id='X1', sync_status=SYNC_STATUS_PENDING_PUSH)
    adapter.add('Home', 'X1', 'Provider title', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))
    adapter.fail_writes = True

    result = reconciler.run_sync(['Home'])

    row = _by_external_id(db)['X1']
    assert row['title'] == 'My local edit'
    assert row['sync_status'] == SYNC_STATUS_PENDING_PUSH
    assert result.errors == ['Failed to push event: My local edit (provider unreachable)']


def test_local_edit_during_run_is_not_overwritten_by_pull(db, adapter, reconciler, make_event,
                                                          monkeypatch):
    event = make_event(title='Old title', external_id='X1')
    adapter.add('Home', 'X1', 'Provider title', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))
    adapter.fail_writes = True
    original_fetch = db.fetch_all_events

    def fetch_then_edit():
        rows = original_fetch()
        db.update_event(event['id'], {'title': 'My local edit', 'sync_status': SYNC_STATUS_PENDING_PUSH})
        return rows

    monkeypatch.setattr(db, 'fetch_all_events', fetch_then_edit)

    result = reconciler.run_sync(['Home'])

    assert result.updated == 0
    row = db.get_event(event['id'])
    assert row['title'] == 'My local edit'
    assert row['sync_status'] == SYNC_STATUS_PENDING_PUSH


# ------------------------------------------------------------------
# Push
# ------------------------------------------------------------------


def test_pending_event_is_pushed(db, adapter, reconciler, make_event):
    event = make_event(title='Board Meeting')

    result = reconciler.run_sync(['Home'])

    assert result.pushed == 1
    row = db.get_event(event['id'])
    assert row['sync_status'] == SYNC_STATUS_SYNCED
    assert row['external_id'] == 'EXT-1'
    assert row['last_synced_at'] is not None
    # Personal maps to the Home provider calendar
    assert 'EXT-1' in adapter.calendars['Home']


def test_pushed_event_survives_its_own_run_and_the_next(db, adapter, reconciler, make_event):
    event = make_event(title='Board Meeting')

    first = reconciler.run_sync(['Home'])
    second = reconciler.run_sync(['Home'])

    assert first.deleted == 0
    assert second.pulled == 0
    assert second.pushed == 0
    assert second.deleted == 0
    assert db.get_event(event['id'])['external_id'] == 'EXT-1'


def test_failed_push_stays_pending_and_retries_next_run(db, adapter, reconciler, make_event):
    event = make_event(title='Board Meeting')
    adapter.fail_writes = True

    first = reconciler.run_sync(['Home'])

    assert first.pushed == 0
    assert first.errors == ['Failed to push event: Board Meeting (provider unreachable)']
    row = db.get_event(event['id'])
    assert row['sync_status'] == SYNC_STATUS_PENDING_PUSH
    assert row['external_id'] is None

    adapter.fail_writes = False
    second = reconciler.run_sync(['Home'])

    assert second.pushed == 1
    assert db.get_event(event['id'])['sync_status'] == SYNC_STATUS_SYNCED


def test_one_push_failure_does_not_stop_the_others(db, adapter, reconciler, make_event, monkeypatch):
    make_event(title='Broken')
    make_event(title='Fine')
    original_create = adapter.create_event

    def flaky_create(fields, calendar_name):
        if fields.title == 'Broken':
            raise RuntimeError('boom')
        return original_create(fields, calendar_name)

    monkeypatch.setattr(adapter, 'create_event', flaky_create)

    result = reconciler.run_sync(['Home'])

    assert result.pushed == 1
    assert result.errors == ['Failed to push event: Broken (boom)']


def test_row_pushed_elsewhere_during_run_is_not_pushed_again(db, adapter, reconciler, make_event,
                                                             monkeypatch):
    event = make_event(title='Board Meeting')
    original_fetch = db.fetch_all_events

    def fetch_then_direct_push():
        rows = original_fetch()
        external_id = adapter.create_event(EventFields.from_event(event), event['calendar_name'])
        db.update_event(event['id'], {'external_id': external_id, 'sync_status': SYNC_STATUS_SYNCED})
        return rows

    monkeypatch.setattr(db, 'fetch_all_events', fetch_then_direct_push)
    first = reconciler.run_sync(['Home'])
    monkeypatch.setattr(db, 'fetch_all_events', original_fetch)
    second = reconciler.run_sync(['Home'])

    assert first.pushed == 0
    assert second.pulled == 0
    assert len(adapter.calendars['Home']) == 1
    assert len(db.fetch_all_events()) == 1


def test_provider_copy_is_removed_when_row_was_pushed_mid_create(db, adapter, reconciler,
                                                                 make_event, monkeypatch):
    event = make_event(title='Board Meeting')
    original_create = adapter.create_event

    def create_racing_direct_push(fields, calendar_name):
        # The direct create lands first
        winner = original_create(fields, calendar_name)
        db.update_event(event['id'], {'external_id': winner, 'sync_status': SYNC_STATUS_SYNCED})
        return original_create(fields, calendar_name)

    monkeypatch.setattr(adapter, 'create_event', create_racing_direct_push)

    result = reconciler.run_sync(['Home'])

    assert result.pushed == 0
    assert result.errors == []
    assert list(adapter.calendars['Home']) == ['EXT-1']
    assert ('delete', 'EXT-2', 'Personal') in adapter.calls
    assert db.get_event(event['id'])['external_id'] == 'EXT-1'


# ------------------------------------------------------------------
# Deletion
# ------------------------------------------------------------------


def test_row_missing_upstream_is_deleted(db, adapter, reconciler, make_event):
    make_event(title='Cancelled', external_id='OLD1')

    result = reconciler.run_sync(['Home'])

    assert result.deleted == 1
    assert db.fetch_all_events() == []


def test_unpushed_rows_are_never_deletion_candidates(db, adapter, reconciler, make_event):
    adapter.fail_writes = True
    event = make_event(title='Offline draft')

    result = reconciler.run_sync(['Home'])

    assert result.deleted == 0
    assert db.get_event(event['id']) is not None


def test_deletion_outside_window_is_logged(db, adapter, reconciler, make_event, caplog):
    make_event(title='Ancient', external_id='OLD1',
               start_time=utc(2001, 1, 1, 9), end_time=utc(2001, 1, 1, 10))

    with caplog.at_level('WARNING', logger='calendar-reconciler'):
        result = reconciler.run_sync(['Home'])

    assert result.deleted == 1
    assert any('outside the sync window' in r.getMessage() for r in caplog.records)


def test_deleting_rows_of_unfetched_calendars_is_logged(db, adapter, reconciler, make_event, caplog):
    make_event(title='Dentist', external_id='H1', calendar_name='Family')

    with caplog.at_level('WARNING', logger='calendar-reconciler'):
        result = reconciler.run_sync(['Work'])

    assert result.deleted == 1
    assert any('did not fetch' in r.getMessage() for r in caplog.records)


def test_failing_calendar_does_not_hide_other_calendars(db, adapter, reconciler):
    adapter.add('Work', 'W1', 'Standup', utc(2025, 3, 1, 9), utc(2025, 3, 1, 10))
    adapter.failing_calendars.add('Home')

    result = reconciler.run_sync(['Home', 'Work'])

    assert result.pulled == 1
    assert set(_by_external_id(db)) == {'W1'}


# ------------------------------------------------------------------
# Run-level behaviour
# ------------------------------------------------------------------


def test_store_snapshot_failure_aborts_before_any_adapter_write(db, adapter, reconciler,
                                                                make_event, monkeypatch):
    make_event(title='Board Meeting')
    adapter.add('Home', 'X1', 'Dentist', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    def broken_select(*args, **kwargs):
        raise OperationalError('SELECT', {}, Exception('database is down'))

    monkeypatch.setattr(db, 'get_session', broken_select)

    with pytest.raises(StoreFetchError):
        reconciler.run_sync(['Home'])

    assert adapter.writes() == []


def test_insert_failure_is_recorded_and_run_continues(db, adapter, reconciler, monkeypatch):
    adapter.add('Home', 'X1', 'Dentist', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))
    adapter.add('Home', 'X2', 'Haircut', utc(2025, 3, 2, 14), utc(2025, 3, 2, 15))
    original_insert = db.insert_event

    def flaky_insert(data):
        if data['title'] == 'Dentist':
            raise PerItemStoreError('Insert failed: disk full', label='Dentist')
        return original_insert(data)

    monkeypatch.setattr(db, 'insert_event', flaky_insert)

    result = reconciler.run_sync(['Home'])

    assert result.pulled == 1
    assert result.errors == ['Failed to pull event: Dentist (Insert failed: disk full)']


def test_concurrent_run_is_rejected(db, adapter, reconciler):
    started = threading.Event()
    release = threading.Event()
    original_list = adapter.list_calendar_events

    def slow_list(calendar_name, window):
        started.set()
        release.wait(5)
        return original_list(calendar_name, window)

    adapter.list_calendar_events = slow_list

    worker = threading.Thread(target=reconciler.run_sync, args=(['Home'],))
    worker.start()
    try:
        assert started.wait(5)
        with pytest.raises(SyncInProgressError):
            CalendarReconciler(db, adapter).run_sync(['Home'])
    finally:
        release.set()
        worker.join(5)

    # Lock is free again once the first run finishes
    assert reconciler.run_sync(['Home']).errors == []


def test_result_shape(adapter, reconciler):
    adapter.add('Home', 'X1', 'Dentist', utc(2025, 3, 1, 14), utc(2025, 3, 1, 15))

    body = reconciler.run_sync(['Home']).to_dict()

    assert body['success'] is True
    assert body['results'] == {
        'pulled': 1, 'pushed': 0, 'updated': 0, 'deleted': 0, 'conflicts': 0, 'errors': [],
    }
    assert body['synced_at'].endswith('Z')


def test_default_calendars_are_used_when_none_given(adapter, reconciler):
    reconciler.run_sync()

    listed = {call[1] for call in adapter.calls if call[0] == 'list'}
    assert listed == {'Home', 'Work'}


@pytest.mark.parametrize('kwargs', [
    {'days_back': -1},
    {'days_forward': 'ninety'},
    {'days_back': True},
    {'calendars': 'Home'},
    {'calendars': ['Home', '']},
    {'calendars': 5},
    {'calendars': {'Home': 1}},
])
def test_invalid_arguments_are_rejected(adapter, reconciler, kwargs):
    with pytest.raises(ValidationError):
        reconciler.run_sync(**kwargs)
    assert adapter.calls == []
