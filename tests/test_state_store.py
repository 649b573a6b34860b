"""
Persisted sync state tests - atomic writes, corrupt files and disabled persistence
"""

import json
from datetime import timedelta

import pytest
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW
from models import PersistedSyncState
from sync.state_store import STATE_FILE_NAME, SyncStateRepository


class TestSyncStateRepository:

    @pytest.mark.state
    def test_missing_file_loads_empty_state(self, state_repository):
        state = state_repository.load()
        assert state.last_sync_times == {}
        assert state.last_persisted_at is None

    @pytest.mark.state
    def test_save_then_load_round_trips_cursors(self, state_repository):
        earlier = NOW - timedelta(hours=3)
        state_repository.save(PersistedSyncState(last_sync_times={'a@x.com': earlier, 'b@x.com': NOW}))

        loaded = state_repository.load()
        assert loaded.last_sync_times == {'a@x.com': earlier, 'b@x.com': NOW}
        assert loaded.last_persisted_at == NOW, "Save stamps lastPersistedAt"

    @pytest.mark.state
    def test_file_layout(self, state_repository):
        state_repository.save(PersistedSyncState(last_sync_times={'a@x.com': NOW}))

        assert os.path.basename(state_repository.state_file) == STATE_FILE_NAME
        assert not os.path.exists(state_repository.state_file + '.tmp'), "Temp file is renamed into place"
        with open(state_repository.state_file) as f:
            data = json.load(f)
        assert data == {
            'lastSyncTimes': {'a@x.com': '2025-03-15T12:00:00+00:00'},
            'lastPersistedAt': '2025-03-15T12:00:00+00:00',
        }

    @pytest.mark.state
    def test_corrupt_file_loads_empty_state(self, state_repository):
        with open(state_repository.state_file, 'w') as f:
            f.write('{not json')

        assert state_repository.load().last_sync_times == {}

    @pytest.mark.state
    def test_invalid_timestamp_loads_empty_state(self, state_repository):
        with open(state_repository.state_file, 'w') as f:
            json.dump({'lastSyncTimes': {'a@x.com': 'yesterday'}}, f)

        assert state_repository.load().last_sync_times == {}

    @pytest.mark.state
    def test_disabled_persistence_writes_nothing(self, tmp_path):
        data_path = tmp_path / 'disabled'
        repository = SyncStateRepository(str(data_path), enabled=False)

        repository.save(PersistedSyncState(last_sync_times={'a@x.com': NOW}))

        assert not data_path.exists(), "Disabled persistence must not create the data directory"
        assert repository.load().last_sync_times == {}

    @pytest.mark.state
    def test_save_failure_is_logged_not_raised(self, state_repository, caplog):
        os.makedirs(state_repository.state_file + '.tmp')

        state_repository.save(PersistedSyncState(last_sync_times={'a@x.com': NOW}))

        assert "Failed to save sync state" in caplog.text
