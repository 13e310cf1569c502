#!/usr/bin/env python3
"""
CalBridge Sync Service

Runs a calendar reconciliation every SYNC_INTERVAL_MINUTES until stopped.
A cycle that finds another run in progress, or can't read the local store,
is logged and retried at the next interval.
"""

import logging
import signal
import time
from datetime import datetime
from typing import List, Optional

from calbridge.adapters.factory import build_adapter
from calbridge.config import (
    LOG_LEVEL, SYNC_INTERVAL_MINUTES, SYNC_LOOKAHEAD_DAYS, SYNC_LOOKBACK_DAYS
)
from calbridge.core.db_manager import DatabaseManager
from calbridge.errors import CalBridgeError, StoreFetchError, SyncInProgressError
from calbridge.sync.reconciler import CalendarReconciler
from calbridge.sync.results import SyncResult


class CalendarSyncService:
    """Scheduled wrapper around CalendarReconciler."""

    def __init__(self, reconciler: CalendarReconciler,
                 calendars: Optional[List[str]] = None,
                 days_back: int = SYNC_LOOKBACK_DAYS,
                 days_forward: int = SYNC_LOOKAHEAD_DAYS,
                 interval_minutes: int = SYNC_INTERVAL_MINUTES):
        self.logger = logging.getLogger('calendar-sync-service')
        self.reconciler = reconciler
        self.calendars = calendars
        self.days_back = days_back
        self.days_forward = days_forward
        self.interval_minutes = interval_minutes
        self.running = False
        self.cycle_count = 0
        self.last_run = None

    def should_run(self) -> bool:
        if self.last_run is None:
            return True
        elapsed = (datetime.now() - self.last_run).total_seconds() / 60
        return elapsed >= self.interval_minutes

    def run_cycle(self) -> Optional[SyncResult]:
        """One reconciliation. Returns None when the run was skipped or aborted."""
        self.cycle_count += 1
        self.logger.info(f"🔁 Sync cycle {self.cycle_count}")

        try:
            result = self.reconciler.run_sync(self.calendars, self.days_back, self.days_forward)
        except SyncInProgressError as e:
            self.logger.warning(f"⏭️  Skipping cycle: {e}")
            return None
        except StoreFetchError as e:
            self.logger.error(f"❌ Sync aborted, local store unavailable: {e}")
            return None
        finally:
            self.last_run = datetime.now()

        if result.errors:
            self.logger.warning(f"⚠️  Cycle {self.cycle_count} finished with {len(result.errors)} errors")
        else:
            self.logger.info(f"✅ Cycle {self.cycle_count} complete: {result.summary()}")
        return result

    def run(self):
        """Run continuously until shutdown() is called."""
        self.running = True
        self.logger.info("🚀 CalBridge sync service started")
        self.logger.info(f"   Interval: every {self.interval_minutes} minutes")

        while self.running:
            try:
                if self.should_run():
                    self.run_cycle()
            except KeyboardInterrupt:
                self.logger.info("⚠️  Interrupted by user")
                break
            except Exception as e:
                self.logger.exception(f"❌ Error in main loop: {e}")

            # Short sleeps so a signal stops the loop promptly
            for _ in range(60):
                if not self.running:
                    break
                time.sleep(1)

        self.logger.info("👋 Service stopped")

    def shutdown(self, signum, frame):
        """Graceful shutdown handler."""
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.running = False


def main():
    """Main function."""
    import argparse

    from calbridge.logging_setup import configure_logging

    parser = argparse.ArgumentParser(description='CalBridge calendar sync service')
    parser.add_argument('--log-level', default=LOG_LEVEL,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Set logging level')
    parser.add_argument('--run-once', action='store_true',
                        help='Run one sync then exit')
    parser.add_argument('--calendars', default=None,
                        help='Comma-separated provider calendars (default: all configured)')
    parser.add_argument('--days-back', type=int, default=SYNC_LOOKBACK_DAYS,
                        help='Days of history to fetch')
    parser.add_argument('--days-forward', type=int, default=SYNC_LOOKAHEAD_DAYS,
                        help='Days ahead to fetch')
    parser.add_argument('--backend', default=None, choices=['google', 'ics'],
                        help='Override CALENDAR_BACKEND')
    args = parser.parse_args()

    configure_logging(args.log_level)

    calendars = [c.strip() for c in args.calendars.split(',')] if args.calendars else None

    try:
        reconciler = CalendarReconciler(DatabaseManager(), build_adapter(args.backend))
    except CalBridgeError as e:
        logging.getLogger('calendar-sync-service').error(f"❌ Startup failed: {e}")
        raise SystemExit(1)

    service = CalendarSyncService(reconciler, calendars, args.days_back, args.days_forward)

    # Register signal handlers
    signal.signal(signal.SIGTERM, service.shutdown)
    signal.signal(signal.SIGINT, service.shutdown)

    if args.run_once:
        try:
            result = service.run_cycle()
        except CalBridgeError as e:
            logging.getLogger('calendar-sync-service').error(f"❌ {e}")
            raise SystemExit(1)
        if result is None:
            raise SystemExit(1)
    else:
        service.run()


if __name__ == '__main__':
    main()
