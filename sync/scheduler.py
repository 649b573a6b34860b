# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Background Scheduler for automatic sync
"""
import logging
import threading
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, List

import schedule

import config
from models import MailboxMapping
from sync.engine import SyncCancelled, SyncEngine
from sync.status import SyncStatusTracker
from utils.timezone import utc_now

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Manages background sync scheduling and manual triggers"""

    def __init__(self, sync_engine: SyncEngine, status_tracker: SyncStatusTracker,
                 mappings_provider: Callable[[], List[MailboxMapping]],
                 interval_minutes: int = None, startup_delay_seconds: float = None,
                 poll_seconds: float = 1.0):
        self.sync_engine = sync_engine
        self.status_tracker = status_tracker
        self.mappings_provider = mappings_provider
        self.interval_minutes = config.SYNC_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        self.startup_delay_seconds = (config.STARTUP_DELAY_SECONDS if startup_delay_seconds is None
                                      else startup_delay_seconds)
        self.poll_seconds = poll_seconds

        self.scheduler_lock = Lock()
        self.scheduler_thread = None
        self.stop_event = threading.Event()
        self.manual_thread = None
        self._schedule = schedule.Scheduler()

    def start(self):
        """Start the scheduler"""
        with self.scheduler_lock:
            # A thread whose stop event is set is on its way out even if a cycle still holds it
            if self.scheduler_thread is None or not self.scheduler_thread.is_alive() or self.stop_event.is_set():
                logger.info(f"Starting scheduler thread (every {self.interval_minutes} minutes)...")
                self.stop_event = threading.Event()
                self.scheduler_thread = threading.Thread(target=self._run_scheduler, args=(self.stop_event,),
                                                         name='sync-scheduler', daemon=True)
                self.scheduler_thread.start()
            else:
                logger.info("Scheduler already running")

    def stop(self, timeout: float = 30.0):
        """Stop the scheduler and cancel any scheduled cycle at its next throttle point"""
        with self.scheduler_lock:
            thread = self.scheduler_thread
            self.stop_event.set()

        logger.info("Stopping scheduler...")
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Scheduler thread did not stop within {timeout}s")

        self._schedule.clear()
        self.status_tracker.set_next_scheduled_sync(None)

    def restart(self):
        logger.info("Restarting scheduler")
        self.stop()
        self.start()

    def is_running(self) -> bool:
        """Check if scheduler is running"""
        with self.scheduler_lock:
            return bool(self.scheduler_thread and self.scheduler_thread.is_alive()
                        and not self.stop_event.is_set())

    def _record_next_run(self):
        next_run = self._schedule.next_run
        if next_run is None:
            next_run = utc_now() + timedelta(minutes=self.interval_minutes)
        else:
            # schedule works in naive local time
            next_run = utc_now() + max(timedelta(0), next_run - datetime.now())
        self.status_tracker.set_next_scheduled_sync(next_run)

    def _run_scheduler(self, stop_event: threading.Event):
        """Run the scheduler loop until this thread's own stop event is set"""
        if self.startup_delay_seconds > 0:
            logger.info(f"⏳ Waiting {self.startup_delay_seconds}s before the first sync...")
            if stop_event.wait(self.startup_delay_seconds):
                logger.info("Scheduler stopped before the first sync")
                return

        self._schedule.clear()
        self._schedule.every(self.interval_minutes).minutes.do(self.run_scheduled_sync)

        self.run_scheduled_sync()

        while not stop_event.is_set():
            self._schedule.run_pending()
            stop_event.wait(self.poll_seconds)

        logger.info("Scheduler stopped")

    def run_scheduled_sync(self):
        """Function called by scheduler - skips instead of queueing when busy"""
        try:
            if not self.status_tracker.is_sync_enabled():
                logger.info("Scheduled sync skipped - sync is disabled")
                return

            if not self.status_tracker.try_acquire_sync_lock():
                logger.info("Scheduled sync skipped - a sync is already running")
                return

            try:
                logger.info("Running scheduled sync")
                self.sync_engine.run_cycle(self.mappings_provider(), cancel_event=self.stop_event)
            finally:
                self.status_tracker.release_sync_lock()

        except SyncCancelled:
            logger.info("Scheduled sync cancelled by shutdown")
        except Exception as e:
            # Don't let sync errors crash the scheduler
            logger.error(f"❌ Scheduled sync failed: {e}")
        finally:
            self._record_next_run()

    def trigger_manual_sync(self, force_full_sync: bool = False) -> bool:
        """Start a cycle in the background; False when one is already running"""
        if not self.status_tracker.try_acquire_sync_lock():
            logger.info("Manual sync rejected - a sync is already running")
            return False

        def run():
            try:
                self.sync_engine.run_cycle(self.mappings_provider(), force_full_sync=force_full_sync)
            except Exception as e:
                logger.error(f"❌ Manual sync failed: {e}")
            finally:
                self.status_tracker.release_sync_lock()

        try:
            thread = threading.Thread(target=run, name='manual-sync', daemon=True)
            thread.start()
            self.manual_thread = thread
        except RuntimeError:
            self.status_tracker.release_sync_lock()
            raise

        logger.info(f"Manual sync started{' (forced full sync)' if force_full_sync else ''}")
        return True
