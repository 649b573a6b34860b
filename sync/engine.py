# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync Engine - One-way reconciliation of source mailboxes into Exchange Online
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import config
from cal_ops import CalendarSource
from cal_ops.writer import GraphCalendarWriter
from models import MailboxMapping, PersistedSyncState, SourceType, SyncResult, merge_mailbox_mappings
from sync.state_store import SyncStateRepository
from sync.status import SyncStatusTracker
from utils.logger import StructuredLogger, log_prefix
from utils.timezone import format_duration, utc_now

logger = logging.getLogger(__name__)

STATUS_SYNCING = 'Syncing'
STATUS_COMPLETED = 'Completed'
STATUS_COMPLETED_WITH_ERRORS = 'Completed with errors'
STATUS_FAILED = 'Failed'
STATUS_CANCELLED = 'Cancelled'


class SyncCancelled(Exception):
    """Raised at a throttle point once the cancel event is set"""


@dataclass
class MappingOutcome:
    name: str
    status: str = STATUS_SYNCING
    evaluated: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    errors: int = 0

    @property
    def completed(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_COMPLETED_WITH_ERRORS)


@dataclass
class CycleSummary:
    outcomes: List[MappingOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def total_errors(self) -> int:
        return sum(o.errors for o in self.outcomes)

    @property
    def total_synced(self) -> int:
        return sum(o.created + o.updated for o in self.outcomes)


class SyncEngine:
    """Core engine for calendar synchronization"""

    def __init__(self, sources: Dict[SourceType, CalendarSource], destination: GraphCalendarWriter,
                 status_tracker: SyncStatusTracker, state_repository: SyncStateRepository,
                 lookback_days: int = None, look_forward_days: int = None,
                 throttle_delay: float = None, clock=utc_now, sleep=time.sleep):
        self.sources = sources
        self.destination = destination
        self.status_tracker = status_tracker
        self.state_repository = state_repository
        self.lookback_days = config.LOOKBACK_DAYS if lookback_days is None else lookback_days
        self.look_forward_days = config.LOOK_FORWARD_DAYS if look_forward_days is None else look_forward_days
        self.throttle_delay = config.THROTTLE_DELAY_SECONDS if throttle_delay is None else throttle_delay
        self._clock = clock
        self._sleep = sleep

        self._state: Optional[PersistedSyncState] = None
        self._state_lock = threading.Lock()
        self.structured_logger = StructuredLogger(__name__)

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    def _ensure_state_loaded(self) -> PersistedSyncState:
        with self._state_lock:
            if self._state is None:
                self._state = self.state_repository.load()
            return self._state

    def last_sync_times(self) -> Dict[str, datetime]:
        """Copy of the per-source-mailbox cursors"""
        state = self._ensure_state_loaded()
        with self._state_lock:
            return dict(state.last_sync_times)

    def _advance_cursor(self, mailbox: str, now: datetime):
        with self._state_lock:
            previous = self._state.last_sync_times.get(mailbox)
            if previous is None or now > previous:
                self._state.last_sync_times[mailbox] = now

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, mappings: Iterable[MailboxMapping], force_full_sync: bool = False,
                  cancel_event: Optional[threading.Event] = None) -> CycleSummary:
        """
        Run every mapping once, in order.

        One mapping failing never stops the batch. Cursors are persisted
        at the end even after a cancellation, which re-raises SyncCancelled.
        """
        mappings = list(mappings)
        started = time.monotonic()
        summary = CycleSummary()

        self._ensure_state_loaded()
        self.status_tracker.start_sync()

        logger.info(f"🚀 Starting sync cycle for {len(mappings)} mapping(s)"
                    f"{' (forced full sync)' if force_full_sync else ''}")
        self.structured_logger.log_sync_event('sync_started', {
            'mappings': len(mappings),
            'force_full_sync': force_full_sync,
        })

        try:
            for mapping in mappings:
                self._check_cancelled(cancel_event)
                outcome = self._sync_mapping(mapping, force_full_sync, cancel_event)
                summary.outcomes.append(outcome)
                if outcome.completed:
                    self._advance_cursor(mapping.source_mailbox, self._clock())

        except SyncCancelled:
            logger.warning("⚠️ Sync cycle cancelled")
            raise

        finally:
            self.state_repository.save(self._state)
            summary.duration_seconds = time.monotonic() - started
            self.status_tracker.end_sync()

            logger.info(f"Sync cycle finished in {format_duration(summary.duration_seconds)}: "
                        f"{summary.total_synced} synced, {summary.total_errors} errors")
            self.structured_logger.log_sync_event('sync_completed', {
                'duration': format_duration(summary.duration_seconds),
                'mappings_processed': len(summary.outcomes),
                'items_synced': summary.total_synced,
                'errors': summary.total_errors,
            })
            self.structured_logger.log_performance('sync_cycle', summary.duration_seconds,
                                                   item_count=summary.total_synced,
                                                   success=summary.total_errors == 0)

        return summary

    def sync_legacy_mailboxes(self, mailboxes: Iterable[str], force_full_sync: bool = False,
                              cancel_event: Optional[threading.Event] = None) -> CycleSummary:
        """Sync each mailbox onto itself, sourced from Exchange On-Premise"""
        return self.run_cycle(merge_mailbox_mappings([], mailboxes), force_full_sync, cancel_event)

    # ------------------------------------------------------------------
    # One mapping
    # ------------------------------------------------------------------

    def _window(self):
        now = self._clock()
        return now - timedelta(days=self.lookback_days), now + timedelta(days=self.look_forward_days)

    def _check_cancelled(self, cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled()

    def _throttle(self, cancel_event: Optional[threading.Event]):
        if cancel_event is not None:
            if cancel_event.wait(self.throttle_delay):
                raise SyncCancelled()
        elif self.throttle_delay > 0:
            self._sleep(self.throttle_delay)

    def _fail_mapping(self, outcome: MappingOutcome, mapping: MailboxMapping, error: str) -> MappingOutcome:
        logger.error(f"{log_prefix(outcome.name)}❌ {error}")
        self.structured_logger.log_sync_event('mapping_failed', {
            'mapping': outcome.name,
            'source_mailbox': mapping.source_mailbox,
            'error': error,
        })
        outcome.status = STATUS_FAILED
        outcome.errors = 1
        self.status_tracker.update_mailbox_status(outcome.name, 0, 1, STATUS_FAILED)
        return outcome

    def _sync_mapping(self, mapping: MailboxMapping, force_full_sync: bool,
                      cancel_event: Optional[threading.Event]) -> MappingOutcome:
        name = mapping.display_name
        prefix = log_prefix(name)
        outcome = MappingOutcome(name=name)

        self.status_tracker.update_mailbox_status(name, 0, 0, STATUS_SYNCING)
        start_date, end_date = self._window()
        logger.info(f"{prefix}Syncing {mapping.source_mailbox} ({mapping.source_type.value}) "
                    f"-> {mapping.destination_mailbox}")

        source = self.sources.get(mapping.source_type)
        if source is None:
            return self._fail_mapping(outcome, mapping, f"No source reader configured for {mapping.source_type.value}")

        try:
            items = source.get_calendar_items(mapping.source_mailbox, start_date, end_date, name)
        except Exception as e:
            return self._fail_mapping(outcome, mapping, f"Failed to fetch items from {mapping.source_mailbox}: {e}")

        try:
            self._reconcile(mapping, items, start_date, end_date, force_full_sync, cancel_event, outcome)
        except SyncCancelled:
            outcome.status = STATUS_CANCELLED
            self._report(outcome)
            raise
        except Exception as e:
            logger.exception(f"{prefix}Unexpected error while syncing")
            outcome.errors += 1
            outcome.status = STATUS_FAILED
            self._report(outcome)
            self.structured_logger.log_sync_event('mapping_failed', {'mapping': name, 'error': str(e)})
            return outcome

        outcome.status = STATUS_COMPLETED if outcome.errors == 0 else STATUS_COMPLETED_WITH_ERRORS
        self._report(outcome)
        logger.info(f"{prefix}✅ {outcome.status}: {outcome.evaluated} evaluated, {outcome.created} created, "
                    f"{outcome.updated} updated, {outcome.deleted} deleted, {outcome.unchanged} unchanged, "
                    f"{outcome.errors} errors")
        return outcome

    def _report(self, outcome: MappingOutcome):
        self.status_tracker.update_mailbox_details(
            outcome.name, outcome.evaluated, outcome.created, outcome.updated,
            outcome.deleted, outcome.unchanged, outcome.errors, outcome.status,
        )

    def _delete(self, mapping: MailboxMapping, source_id: str, outcome: MappingOutcome) -> bool:
        try:
            deleted = self.destination.delete_item(mapping.destination_mailbox, source_id, outcome.name)
        except Exception as e:
            logger.error(f"{log_prefix(outcome.name)}Error deleting {source_id[:20]}...: {e}")
            deleted = False

        if deleted:
            outcome.updated += 1
            outcome.deleted += 1
        else:
            outcome.errors += 1
        return deleted

    def _reconcile(self, mapping: MailboxMapping, items, start_date: datetime, end_date: datetime,
                   force_full_sync: bool, cancel_event: Optional[threading.Event], outcome: MappingOutcome):
        prefix = log_prefix(outcome.name)

        cancelled = [i for i in items if i.is_cancelled]
        active = [i for i in items if not i.is_cancelled]
        outcome.evaluated = len(active) + len(cancelled)
        logger.info(f"{prefix}Found {len(active)} active and {len(cancelled)} cancelled items")

        for item in active:
            item.destination_mailbox = mapping.destination_mailbox
            item.mapping_name = outcome.name
            try:
                result = self.destination.sync_item(item, force_full_sync)
            except Exception as e:
                logger.error(f"{prefix}Error syncing '{item.subject}': {e}")
                result = SyncResult.FAILED

            if result == SyncResult.CREATED:
                outcome.created += 1
            elif result == SyncResult.UPDATED:
                outcome.updated += 1
            elif result == SyncResult.NO_CHANGE:
                outcome.unchanged += 1
            else:
                outcome.errors += 1

            self._throttle(cancel_event)

        deleted_ids = set()
        for item in cancelled:
            if self._delete(mapping, item.id, outcome):
                deleted_ids.add(item.id)
            self._throttle(cancel_event)

        try:
            synced_ids = self.destination.list_synced_source_ids(
                mapping.destination_mailbox, start_date, end_date, outcome.name)
        except Exception as e:
            logger.warning(f"{prefix}Could not list synced events, skipping orphan cleanup: {e}")
            synced_ids = []

        if not synced_ids:
            return

        active_ids = {i.id for i in active}
        orphans = [source_id for source_id in dict.fromkeys(synced_ids)
                   if source_id not in active_ids and source_id not in deleted_ids]

        if orphans:
            logger.info(f"{prefix}Removing {len(orphans)} orphaned events")

        for source_id in orphans:
            self._delete(mapping, source_id, outcome)
            self._throttle(cancel_event)
