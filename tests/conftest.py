"""
Shared fixtures: in-memory source/destination adapters and a stub Graph client
"""
import copy
import os
import sys
import threading
from datetime import datetime

import pytest
import pytz

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import CalendarItem, SyncResult
from sync.state_store import SyncStateRepository
from sync.status import SyncStatusTracker

NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=pytz.UTC)


def make_item(item_id: str, last_modified: datetime = NOW, subject: str = None, **kwargs) -> CalendarItem:
    return CalendarItem(
        id=item_id,
        subject=subject or f"Event {item_id}",
        start=kwargs.pop('start', datetime(2025, 3, 20, 15, 0, tzinfo=pytz.UTC)),
        end=kwargs.pop('end', datetime(2025, 3, 20, 16, 0, tzinfo=pytz.UTC)),
        last_modified=last_modified,
        **kwargs,
    )


class FakeSource:
    """CalendarSource that serves a fixed item list per mailbox"""

    def __init__(self, items_by_mailbox=None, errors_by_mailbox=None):
        self.items_by_mailbox = items_by_mailbox or {}
        self.errors_by_mailbox = errors_by_mailbox or {}
        self.calls = []

    def initialize(self):
        pass

    def get_calendar_items(self, mailbox, start_date, end_date, mapping_name=None):
        self.calls.append((mailbox, start_date, end_date, mapping_name))
        if mailbox in self.errors_by_mailbox:
            raise self.errors_by_mailbox[mailbox]
        return [copy.deepcopy(item) for item in self.items_by_mailbox.get(mailbox, [])]


class FakeDestination:
    """Destination adapter that keeps markers in a dict and applies the same change rule"""

    def __init__(self):
        self.events = {}  # (mailbox, source_id) -> stored last_modified
        self.sync_calls = []
        self.delete_calls = []
        self.fail_ids = set()
        self.raise_ids = set()
        self.fail_delete_ids = set()

    def sync_item(self, item, force_update=False):
        self.sync_calls.append((item.id, force_update))
        if item.id in self.raise_ids:
            raise RuntimeError(f"boom on {item.id}")
        if item.id in self.fail_ids:
            return SyncResult.FAILED

        key = (item.destination_mailbox or item.source_mailbox, item.id)
        stored = self.events.get(key)
        if key in self.events and not force_update and stored >= item.last_modified:
            return SyncResult.NO_CHANGE

        self.events[key] = item.last_modified
        return SyncResult.UPDATED if stored is not None else SyncResult.CREATED

    def delete_item(self, destination_mailbox, source_id, mapping_name=None):
        self.delete_calls.append((destination_mailbox, source_id))
        if source_id in self.fail_delete_ids:
            return False
        self.events.pop((destination_mailbox, source_id), None)
        return True

    def list_synced_source_ids(self, destination_mailbox, start_date, end_date, mapping_name=None):
        return [source_id for mailbox, source_id in self.events if mailbox == destination_mailbox]


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text='', headers=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._json


class FakeSession:
    """requests.Session stand-in that replays queued responses (or raises queued errors) and records calls"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.calls.append({
            'method': method, 'url': url, 'headers': headers or {},
            'params': params, 'json': json,
        })
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeAuth:
    def __init__(self):
        self.invalidated = 0
        self.refreshed = 0

    def initialize(self):
        pass

    def get_headers(self, extra=None):
        headers = {'Authorization': 'Bearer test-token', 'Content-Type': 'application/json'}
        if extra:
            headers.update(extra)
        return headers

    def invalidate(self):
        self.invalidated += 1

    def refresh_access_token(self):
        self.refreshed += 1
        return True


@pytest.fixture
def fixed_clock():
    return lambda: NOW


@pytest.fixture
def status_tracker(fixed_clock):
    return SyncStatusTracker(clock=fixed_clock)


@pytest.fixture
def state_repository(tmp_path, fixed_clock):
    return SyncStateRepository(str(tmp_path / 'data'), enabled=True, clock=fixed_clock)


@pytest.fixture
def destination():
    return FakeDestination()


@pytest.fixture
def cancel_event():
    return threading.Event()
