#!/usr/bin/env python3
"""
CalBridge Database Manager

Owns the connection pool for the canonical event store and exposes the
row-level operations the sync engine and the event API need.
"""

import logging
import threading
import uuid
import zlib
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import create_engine, delete, func, insert, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from calbridge.config import DATABASE_URL
from calbridge.core.schema import (
    DATETIME_COLUMNS, SYNC_STATUS_PENDING_PUSH, calendar_events, metadata
)
from calbridge.core.timeutil import to_utc, utc_now
from calbridge.errors import CalBridgeError, PerItemStoreError, StoreFetchError, SyncInProgressError


class DatabaseManager:
    """Manages database connections and queries for CalBridge events."""

    # In-process fallback for backends without advisory locks
    _local_locks: Dict[str, threading.Lock] = {}
    _local_locks_guard = threading.Lock()

    def __init__(self, connection_string: str = None):
        self.logger = logging.getLogger('db-manager')

        if connection_string is None:
            connection_string = DATABASE_URL

        self.connection_string = connection_string

        if self._is_in_memory_sqlite(connection_string):
            # A single shared connection keeps the in-memory database alive
            self.engine = create_engine(
                connection_string,
                poolclass=StaticPool,
                connect_args={'check_same_thread': False},
                echo=False
            )
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,  # Verify connections before using
                echo=False  # Set to True for SQL debugging
            )

        self.SessionLocal = sessionmaker(bind=self.engine)

        self.logger.info("✅ Database manager initialized")

    @staticmethod
    def _is_in_memory_sqlite(connection_string: str) -> bool:
        return connection_string.startswith('sqlite') and (
            connection_string.rstrip('/') == 'sqlite:' or ':memory:' in connection_string
        )

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == 'postgresql'

    @contextmanager
    def get_session(self):
        """Context manager for database sessions."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            self.logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    @staticmethod
    def lock_id_for(key: str) -> int:
        """Stable 31-bit lock id; str hash() is salted per process."""
        return zlib.crc32(key.encode('utf-8')) & 0x7FFFFFFF

    @contextmanager
    def advisory_lock(self, key: str, blocking: bool = False):
        """
        Hold a named single-writer lock for the duration of the context.

        PostgreSQL gets a session-level advisory lock, so separate worker
        processes exclude each other. Other backends fall back to an
        in-process lock. With blocking=False a busy lock raises
        SyncInProgressError immediately.
        """
        if not self.is_postgres:
            with self._local_lock(key, blocking):
                yield
            return

        lock_id = self.lock_id_for(key)
        session = self.SessionLocal()
        try:
            try:
                if blocking:
                    session.execute(text("SELECT pg_advisory_lock(:lock_id)"),
                                    {"lock_id": lock_id})
                    acquired = True
                else:
                    acquired = session.execute(text("SELECT pg_try_advisory_lock(:lock_id)"),
                                               {"lock_id": lock_id}).scalar()
            except SQLAlchemyError as e:
                self.logger.error(f"❌ Could not reach the store to take lock {key}: {e}")
                raise StoreFetchError(f"Failed to acquire lock '{key}': {e}") from e

            if not acquired:
                raise SyncInProgressError(f"Lock '{key}' is held by another run")
            self.logger.debug(f"Acquired advisory lock: {key} (ID: {lock_id})")

            try:
                yield
            finally:
                session.execute(text("SELECT pg_advisory_unlock(:lock_id)"),
                                {"lock_id": lock_id})
                self.logger.debug(f"Released advisory lock: {key} (ID: {lock_id})")

            session.commit()
        except CalBridgeError:
            session.rollback()
            raise
        except Exception as e:
            self.logger.error(f"Error with advisory lock {key}: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _local_lock(self, key: str, blocking: bool):
        with self._local_locks_guard:
            lock = self._local_locks.setdefault(key, threading.Lock())

        if not lock.acquire(blocking=blocking):
            raise SyncInProgressError(f"Lock '{key}' is held by another run")
        self.logger.debug(f"Acquired local lock: {key}")
        try:
            yield
        finally:
            lock.release()
            self.logger.debug(f"Released local lock: {key}")

    def create_schema(self):
        """Create the event table and its indexes if they don't exist."""
        metadata.create_all(self.engine)
        self.logger.info("✅ Schema ready")

    def test_connection(self) -> bool:
        """Test database connection."""
        try:
            with self.get_session() as session:
                result = session.execute(text("SELECT 1")).scalar()
                if result == 1:
                    self.logger.info("✅ Database connection successful")
                    return True
        except Exception as e:
            self.logger.error(f"❌ Database connection failed: {e}")
        return False

    @staticmethod
    def _row_to_dict(row) -> Dict:
        event = dict(row)
        for column in DATETIME_COLUMNS:
            if event.get(column) is not None:
                event[column] = to_utc(event[column])
        return event

    @staticmethod
    def _normalize_values(values: Dict) -> Dict:
        normalized = dict(values)
        for column in DATETIME_COLUMNS:
            if isinstance(normalized.get(column), datetime):
                normalized[column] = to_utc(normalized[column])
        return normalized

    def fetch_all_events(self) -> List[Dict]:
        """
        Read every local event, unwindowed.

        This is the snapshot a sync run diffs against. Any failure raises
        StoreFetchError, since a partial snapshot would turn into bogus
        inserts and deletions.
        """
        try:
            with self.get_session() as session:
                rows = session.execute(
                    select(calendar_events).order_by(calendar_events.c.start_time)
                ).mappings().all()
                return [self._row_to_dict(row) for row in rows]
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to read local event snapshot: {e}")
            raise StoreFetchError(f"Failed to read local events: {e}") from e

    def get_event(self, event_id: str) -> Optional[Dict]:
        """Get a specific event by its store id."""
        with self.get_session() as session:
            row = session.execute(
                select(calendar_events).where(calendar_events.c.id == event_id)
            ).mappings().first()
            return self._row_to_dict(row) if row else None

    def list_events(self, start: datetime = None, end: datetime = None,
                    calendar_name: str = None) -> List[Dict]:
        """List events whose start falls inside [start, end], ordered by start."""
        query = select(calendar_events)
        if start is not None:
            query = query.where(calendar_events.c.start_time >= to_utc(start))
        if end is not None:
            query = query.where(calendar_events.c.start_time <= to_utc(end))
        if calendar_name:
            query = query.where(calendar_events.c.calendar_name == calendar_name)
        query = query.order_by(calendar_events.c.start_time)

        with self.get_session() as session:
            rows = session.execute(query).mappings().all()
            return [self._row_to_dict(row) for row in rows]

    def insert_event(self, event_data: Dict) -> Dict:
        """Insert a new event row and return it as stored."""
        now = utc_now()
        row = self._normalize_values(event_data)
        row.setdefault('id', str(uuid.uuid4()))
        row.setdefault('created_at', now)
        row.setdefault('updated_at', now)
        row.setdefault('all_day', False)
        row.setdefault('sync_status', SYNC_STATUS_PENDING_PUSH)

        try:
            with self.get_session() as session:
                session.execute(insert(calendar_events).values(**row))
            self.logger.debug(f"Inserted event {row['id']} ({row.get('title')})")
            return {**dict.fromkeys(calendar_events.c.keys()), **row}
        except SQLAlchemyError as e:
            self.logger.error(f"Error inserting event '{row.get('title')}': {e}")
            raise PerItemStoreError(f"Insert failed: {e}", label=row.get('title')) from e

    def update_event(self, event_id: str, changes: Dict, label: str = None,
                     expected: Dict = None) -> bool:
        """
        Apply column changes to one event.

        `expected` maps columns to the values they must still hold (None
        meaning NULL); the update is skipped otherwise. Returns False if the
        row is gone or no longer matches.
        """
        values = self._normalize_values(changes)
        values.setdefault('updated_at', utc_now())

        query = update(calendar_events).where(calendar_events.c.id == event_id)
        for name, value in (expected or {}).items():
            column = calendar_events.c[name]
            query = query.where(column.is_(None) if value is None else column == value)

        try:
            with self.get_session() as session:
                result = session.execute(query.values(**values))
                updated = result.rowcount > 0
            self.logger.debug(f"Updated event {event_id}: {sorted(values)}")
            return updated
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating event {event_id}: {e}")
            raise PerItemStoreError(f"Update failed: {e}", label=label or event_id) from e

    def delete_event(self, event_id: str, label: str = None) -> bool:
        """Hard-delete one event. Returns False if it was already gone."""
        try:
            with self.get_session() as session:
                result = session.execute(
                    delete(calendar_events).where(calendar_events.c.id == event_id)
                )
                deleted = result.rowcount > 0
            self.logger.debug(f"Deleted event {event_id}")
            return deleted
        except SQLAlchemyError as e:
            self.logger.error(f"Error deleting event {event_id}: {e}")
            raise PerItemStoreError(f"Delete failed: {e}", label=label or event_id) from e

    def get_stats(self) -> Dict:
        """Get database statistics."""
        try:
            with self.get_session() as session:
                stats = {}

                stats['total_events'] = session.execute(
                    select(func.count()).select_from(calendar_events)
                ).scalar()

                status_counts = session.execute(
                    select(calendar_events.c.sync_status, func.count().label('count'))
                    .group_by(calendar_events.c.sync_status)
                ).mappings().all()
                stats['by_sync_status'] = {row['sync_status']: row['count'] for row in status_counts}

                calendar_counts = session.execute(
                    select(calendar_events.c.calendar_name, func.count().label('count'))
                    .group_by(calendar_events.c.calendar_name)
                ).mappings().all()
                stats['by_calendar'] = {row['calendar_name']: row['count'] for row in calendar_counts}

                return stats
        except Exception as e:
            self.logger.error(f"Error getting stats: {e}")
            return {}


def main():
    """Create the schema or check connectivity."""
    import argparse

    from calbridge.logging_setup import configure_logging

    parser = argparse.ArgumentParser(description='CalBridge database utilities')
    parser.add_argument('command', choices=['init', 'check', 'stats'],
                        help='init: create tables, check: test connection, stats: event counts')
    parser.add_argument('--database-url', default=None,
                        help='Override DATABASE_URL')
    args = parser.parse_args()

    configure_logging('INFO')
    db = DatabaseManager(args.database_url)

    if args.command == 'init':
        db.create_schema()
    elif args.command == 'check':
        if not db.test_connection():
            raise SystemExit(1)
    else:
        print(db.get_stats())


if __name__ == '__main__':
    main()
