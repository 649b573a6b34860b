# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync State Repository - Persists per-mailbox sync cursors across restarts
"""
import json
import logging
import os
import threading

from models import PersistedSyncState
from utils.timezone import utc_now

logger = logging.getLogger(__name__)

STATE_FILE_NAME = 'sync-state.json'


class SyncStateRepository:
    """JSON file store for PersistedSyncState, written atomically"""

    def __init__(self, data_path: str, enabled: bool = True, clock=utc_now):
        self.data_path = data_path
        self.enabled = enabled
        self.state_file = os.path.join(data_path, STATE_FILE_NAME)
        self._clock = clock
        self._lock = threading.Lock()

        if self.enabled:
            os.makedirs(self.data_path, exist_ok=True)

    def load(self) -> PersistedSyncState:
        """Read saved cursors; a missing or unreadable file yields an empty state"""
        if not self.enabled:
            return PersistedSyncState()

        with self._lock:
            if not os.path.exists(self.state_file):
                logger.info("No persisted sync state found - starting fresh")
                return PersistedSyncState()

            try:
                with open(self.state_file, 'r') as f:
                    state = PersistedSyncState.from_dict(json.load(f))
                logger.info(f"✅ Loaded sync state for {len(state.last_sync_times)} mailboxes")
                return state
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load sync state from {self.state_file}: {e}")
                return PersistedSyncState()

    def save(self, state: PersistedSyncState):
        """Write cursors via temp file + rename. Failures are logged, not raised."""
        if not self.enabled:
            return

        with self._lock:
            temp_file = self.state_file + '.tmp'
            try:
                state.last_persisted_at = self._clock()
                with open(temp_file, 'w') as f:
                    json.dump(state.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_file, self.state_file)
                logger.debug(f"Saved sync state for {len(state.last_sync_times)} mailboxes")
            except OSError as e:
                logger.error(f"Failed to save sync state to {self.state_file}: {e}")
