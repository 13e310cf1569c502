"""Table definitions for the canonical event store."""

from sqlalchemy import (
    Boolean, Column, DateTime, Index, MetaData, String, Table, Text, UniqueConstraint
)

SYNC_STATUS_SYNCED = 'synced'
SYNC_STATUS_PENDING_PUSH = 'pending_push'

metadata = MetaData()

calendar_events = Table(
    'calendar_events',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('external_id', String(1024), nullable=True),
    Column('title', Text, nullable=False),
    Column('description', Text, nullable=True),
    Column('start_time', DateTime(timezone=True), nullable=False),
    Column('end_time', DateTime(timezone=True), nullable=False),
    Column('all_day', Boolean, nullable=False, default=False),
    Column('location', Text, nullable=True),
    Column('calendar_name', String(64), nullable=False),
    Column('business_id', String(64), nullable=True),
    Column('sync_status', String(32), nullable=False, default=SYNC_STATUS_PENDING_PUSH),
    Column('last_synced_at', DateTime(timezone=True), nullable=True),
    Column('created_by', String(255), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # One local row per provider event; NULLs (unpushed rows) are not constrained
    UniqueConstraint('external_id', name='uq_calendar_events_external_id'),
)

Index('ix_calendar_events_sync_status', calendar_events.c.sync_status)
Index('ix_calendar_events_start_time', calendar_events.c.start_time)

# Columns the pull phase copies from the provider onto an existing row
CONTENT_COLUMNS = ('title', 'description', 'start_time', 'end_time', 'all_day', 'location')

# Columns a user may change through the event API
EDITABLE_COLUMNS = CONTENT_COLUMNS + ('calendar_name', 'business_id')

DATETIME_COLUMNS = ('start_time', 'end_time', 'last_synced_at', 'created_at', 'updated_at')
