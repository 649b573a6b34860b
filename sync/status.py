# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync Status Tracker - Thread-safe status snapshot and the process-wide sync gate
"""
import copy
import logging
import threading
from datetime import datetime
from typing import Optional

from models import MailboxSyncStatus, SyncStatus
from utils.timezone import utc_now

logger = logging.getLogger(__name__)


class SyncStatusTracker:
    """
    Holds the service status shown by the API and the lock that keeps
    at most one sync cycle in flight.

    Counters accumulate across cycles for the life of the process.
    """

    def __init__(self, clock=utc_now):
        self._clock = clock
        self._status = SyncStatus()
        self._status_lock = threading.Lock()
        self._sync_gate = threading.Lock()

    def get_status(self) -> SyncStatus:
        with self._status_lock:
            return copy.deepcopy(self._status)

    def is_running(self) -> bool:
        with self._status_lock:
            return self._status.is_running

    def is_sync_enabled(self) -> bool:
        with self._status_lock:
            return self._status.sync_enabled

    def set_sync_enabled(self, enabled: bool):
        with self._status_lock:
            self._status.sync_enabled = enabled
        logger.info(f"Sync {'enabled' if enabled else 'disabled'}")

    def start_sync(self):
        with self._status_lock:
            self._status.is_running = True

    def end_sync(self):
        with self._status_lock:
            self._status.is_running = False
            self._status.last_sync_time = self._clock()

    def set_next_scheduled_sync(self, next_sync: Optional[datetime]):
        with self._status_lock:
            self._status.next_scheduled_sync = next_sync

    def _mailbox(self, name: str) -> MailboxSyncStatus:
        mailbox_status = self._status.mailbox_statuses.get(name)
        if mailbox_status is None:
            mailbox_status = MailboxSyncStatus(mailbox=name)
            self._status.mailbox_statuses[name] = mailbox_status
        return mailbox_status

    def update_mailbox_status(self, name: str, items_synced: int, errors: int, status: str):
        """Simple update used for status transitions and fetch failures"""
        with self._status_lock:
            mailbox_status = self._mailbox(name)
            mailbox_status.items_synced += items_synced
            mailbox_status.errors += errors
            mailbox_status.status = status
            mailbox_status.last_sync_time = self._clock()
            self._status.total_items_synced += items_synced
            self._status.total_errors += errors

    def update_mailbox_details(self, name: str, evaluated: int, created: int, updated: int,
                               deleted: int, unchanged: int, errors: int, status: str):
        """Detailed update at the end of a mapping; created + updated count as synced"""
        synced = created + updated
        with self._status_lock:
            mailbox_status = self._mailbox(name)
            mailbox_status.items_evaluated += evaluated
            mailbox_status.items_created += created
            mailbox_status.items_updated += updated
            mailbox_status.items_deleted += deleted
            mailbox_status.items_unchanged += unchanged
            mailbox_status.items_synced += synced
            mailbox_status.errors += errors
            mailbox_status.status = status
            mailbox_status.last_sync_time = self._clock()
            self._status.total_items_synced += synced
            self._status.total_errors += errors

    def try_acquire_sync_lock(self) -> bool:
        """Zero-timeout attempt; False means a cycle is already in flight"""
        return self._sync_gate.acquire(blocking=False)

    def release_sync_lock(self):
        try:
            self._sync_gate.release()
        except RuntimeError:
            logger.warning("release_sync_lock called while the sync lock was not held")
