"""
Control API tests - status, manual start, toggle, health and logs
"""

import logging

import pytest
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW
from app import create_app
from utils.logger import InMemoryLogHandler


class FakeEngine:
    def last_sync_times(self):
        return {'a@x.com': NOW}


class FakeScheduler:
    def __init__(self, status_tracker, accept=True):
        self.status_tracker = status_tracker
        self.accept = accept
        self.triggered = []
        self.restarts = 0

    def is_running(self):
        return True

    def restart(self):
        self.restarts += 1

    def trigger_manual_sync(self, force_full_sync=False):
        self.triggered.append(force_full_sync)
        return self.accept


@pytest.fixture
def log_handler():
    handler = InMemoryLogHandler(max_records=50)
    log = logging.getLogger('tests.api')
    log.setLevel(logging.DEBUG)
    log.propagate = False
    log.addHandler(handler)
    log.info("[alpha] Retrieved 3 calendar items")
    log.error("[beta] Failed to fetch calendar items")
    log.debug("[alpha] No change: Staff Mass")
    yield handler
    log.removeHandler(handler)


@pytest.fixture
def scheduler(status_tracker):
    return FakeScheduler(status_tracker)


@pytest.fixture
def client(status_tracker, scheduler, log_handler):
    app = create_app(FakeEngine(), scheduler, status_tracker, log_handler, allow_remote=False, debug=False)
    return app.test_client()


class TestSyncEndpoints:

    @pytest.mark.api
    def test_status_includes_cursors(self, client, status_tracker):
        status_tracker.update_mailbox_status('alpha', 2, 0, 'Completed')

        data = client.get('/api/sync/status').get_json()

        assert data['mailbox_statuses']['alpha']['items_synced'] == 2
        assert data['last_sync_times'] == {'a@x.com': '2025-03-15T12:00:00+00:00'}
        assert data['scheduler_running'] is True

    @pytest.mark.api
    def test_start_returns_accepted(self, client, scheduler):
        response = client.post('/api/sync/start', json={'forceFullSync': True})

        assert response.status_code == 202
        assert scheduler.triggered == [True]

    @pytest.mark.api
    def test_start_without_body_is_not_forced(self, client, scheduler):
        assert client.post('/api/sync/start').status_code == 202
        assert scheduler.triggered == [False]

    @pytest.mark.api
    def test_start_conflicts_while_running(self, client, status_tracker, scheduler):
        status_tracker.start_sync()

        response = client.post('/api/sync/start', json={})

        assert response.status_code == 409
        assert scheduler.triggered == []

    @pytest.mark.api
    def test_start_conflicts_when_lock_is_taken(self, status_tracker, log_handler):
        scheduler = FakeScheduler(status_tracker, accept=False)
        app = create_app(FakeEngine(), scheduler, status_tracker, log_handler, allow_remote=False)

        assert app.test_client().post('/api/sync/start').status_code == 409

    @pytest.mark.api
    def test_toggle_flips_and_sets(self, client, status_tracker):
        assert client.post('/api/sync/toggle').get_json() == {'syncEnabled': False}
        assert status_tracker.is_sync_enabled() is False

        assert client.post('/api/sync/toggle', json={'enabled': True}).get_json() == {'syncEnabled': True}
        assert client.post('/api/sync/toggle', json={'enabled': 'yes'}).status_code == 400

    @pytest.mark.api
    def test_restart(self, client, scheduler):
        assert client.post('/api/sync/restart').status_code == 200
        assert scheduler.restarts == 1


class TestHealth:

    @pytest.mark.api
    def test_healthy_before_first_sync(self, client):
        data = client.get('/health').get_json()
        assert data['status'] == 'healthy'

    @pytest.mark.api
    def test_degraded_when_most_writes_fail(self, client, status_tracker):
        status_tracker.update_mailbox_status('alpha', 1, 3, 'Completed with errors')
        status_tracker.end_sync()

        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'degraded'

    @pytest.mark.api
    def test_healthy_at_half_errors(self, client, status_tracker):
        status_tracker.update_mailbox_status('alpha', 2, 2, 'Completed with errors')
        status_tracker.end_sync()

        assert client.get('/health').get_json()['status'] == 'healthy'


class TestLogsEndpoint:

    @pytest.mark.api
    def test_filters_by_level_and_mapping(self, client):
        errors = client.get('/api/logs?level=ERROR').get_json()
        assert [r['message'] for r in errors['logs']] == ["[beta] Failed to fetch calendar items"]

        alpha = client.get('/api/logs?mapping=alpha').get_json()
        assert alpha['count'] == 2

        limited = client.get('/api/logs?limit=1').get_json()
        assert limited['logs'][0]['message'] == "[alpha] No change: Staff Mass"

    @pytest.mark.api
    def test_bad_limit(self, client):
        assert client.get('/api/logs?limit=lots').status_code == 400


class TestApiGuards:

    @pytest.mark.api
    def test_remote_clients_rejected(self, client):
        response = client.get('/api/sync/status', environ_base={'REMOTE_ADDR': '10.1.2.3'})
        assert response.status_code == 403

    @pytest.mark.api
    def test_health_open_to_remote_clients(self, client):
        assert client.get('/health', environ_base={'REMOTE_ADDR': '10.1.2.3'}).status_code == 200

    @pytest.mark.api
    def test_remote_allowed_when_configured(self, status_tracker, scheduler, log_handler):
        app = create_app(FakeEngine(), scheduler, status_tracker, log_handler, allow_remote=True)
        response = app.test_client().get('/api/sync/status', environ_base={'REMOTE_ADDR': '10.1.2.3'})
        assert response.status_code == 200

    @pytest.mark.api
    def test_internal_errors_hide_details(self, status_tracker, scheduler, log_handler):
        class BrokenEngine(FakeEngine):
            def last_sync_times(self):
                raise RuntimeError('secret path /etc/app')

        app = create_app(BrokenEngine(), scheduler, status_tracker, log_handler, debug=False)
        response = app.test_client().get('/api/sync/status')

        assert response.status_code == 500
        assert response.get_json() == {'error': 'Internal server error'}

    @pytest.mark.api
    def test_unknown_route_is_json_404(self, client):
        response = client.get('/nope')
        assert response.status_code == 404
        assert 'error' in response.get_json()
