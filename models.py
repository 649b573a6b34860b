# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Data models for Exchange Calendar Sync
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from utils.timezone import parse_iso_utc, to_iso_utc

# =============================================================================
# ENUMS
# =============================================================================


class SourceType(Enum):
    """Where a mapping's source calendar lives"""
    EXCHANGE_ON_PREMISE = 'ExchangeOnPremise'  # Exchange 2013+ via EWS
    EXCHANGE_ONLINE = 'ExchangeOnline'          # Exchange Online via Graph

    @classmethod
    def parse(cls, value) -> 'SourceType':
        """Accept 'ExchangeOnline', 'exchange_online' or a SourceType"""
        if isinstance(value, cls):
            return value
        if value is None or value == '':
            return cls.EXCHANGE_ON_PREMISE

        text = str(value).strip().lower()
        for member in cls:
            if text in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown source type: {value!r}")


class SyncResult(Enum):
    """Outcome of writing one item to the destination"""
    CREATED = 'Created'
    UPDATED = 'Updated'
    NO_CHANGE = 'NoChange'
    FAILED = 'Failed'


# =============================================================================
# CALENDAR ITEMS AND MAPPINGS
# =============================================================================


@dataclass
class CalendarItem:
    """A source calendar item normalized for the destination writer"""
    id: str
    subject: str = ''
    body: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    location: str = ''
    is_all_day: bool = False
    required_attendees: List[str] = field(default_factory=list)
    optional_attendees: List[str] = field(default_factory=list)
    organizer: Optional[str] = None
    categories: Optional[str] = None
    is_recurring: bool = False
    recurrence_pattern: Optional[str] = None
    last_modified: Optional[datetime] = None
    source_mailbox: str = ''
    destination_mailbox: str = ''
    mapping_name: str = ''
    is_cancelled: bool = False

    def category_list(self) -> List[str]:
        if not self.categories:
            return []
        return [c.strip() for c in self.categories.split(',') if c.strip()]


def _local_part(address: str) -> str:
    return address.split('@')[0]


@dataclass(frozen=True)
class MailboxMapping:
    """A source mailbox mirrored into a destination mailbox"""
    source_mailbox: str
    destination_mailbox: str
    source_type: SourceType = SourceType.EXCHANGE_ON_PREMISE
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name
        return f"{_local_part(self.source_mailbox)} -> {_local_part(self.destination_mailbox)}"

    @classmethod
    def from_dict(cls, data: Dict) -> 'MailboxMapping':
        """Build from the settings file shape (camelCase keys)"""
        source = (data.get('sourceMailbox') or data.get('source_mailbox') or '').strip()
        destination = (data.get('destinationMailbox') or data.get('destination_mailbox') or '').strip()
        if not source or not destination:
            raise ValueError(f"Mailbox mapping needs a source and destination mailbox: {data!r}")

        return cls(
            source_mailbox=source,
            destination_mailbox=destination,
            source_type=SourceType.parse(data.get('sourceType', data.get('source_type'))),
            name=data.get('name') or None,
        )

    def to_dict(self) -> Dict:
        return {
            'name': self.display_name,
            'sourceMailbox': self.source_mailbox,
            'destinationMailbox': self.destination_mailbox,
            'sourceType': self.source_type.value,
        }


def merge_mailbox_mappings(explicit: Iterable[MailboxMapping],
                           legacy_mailboxes: Iterable[str]) -> List[MailboxMapping]:
    """
    Combine explicit mappings with the legacy list of monitored mailboxes.

    Explicit mappings win. Each legacy mailbox not already used as a source
    becomes an on-premise mapping onto itself.
    """
    mappings = list(explicit)
    seen_sources = {m.source_mailbox.lower() for m in mappings}

    for mailbox in legacy_mailboxes:
        mailbox = (mailbox or '').strip()
        if not mailbox or mailbox.lower() in seen_sources:
            continue
        mappings.append(MailboxMapping(
            source_mailbox=mailbox,
            destination_mailbox=mailbox,
            source_type=SourceType.EXCHANGE_ON_PREMISE,
        ))
        seen_sources.add(mailbox.lower())

    return mappings


# =============================================================================
# PERSISTED STATE
# =============================================================================


@dataclass
class PersistedSyncState:
    """Per-source-mailbox sync cursors that survive restarts"""
    last_sync_times: Dict[str, datetime] = field(default_factory=dict)
    last_persisted_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'lastSyncTimes': {mailbox: to_iso_utc(ts) for mailbox, ts in self.last_sync_times.items()},
            'lastPersistedAt': to_iso_utc(self.last_persisted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PersistedSyncState':
        if not isinstance(data, dict):
            raise ValueError("Sync state must be a JSON object")

        times = {}
        for mailbox, value in (data.get('lastSyncTimes') or {}).items():
            parsed = parse_iso_utc(value)
            if parsed is None:
                raise ValueError(f"Invalid sync time for {mailbox}: {value!r}")
            times[mailbox] = parsed

        return cls(
            last_sync_times=times,
            last_persisted_at=parse_iso_utc(data.get('lastPersistedAt')),
        )


# =============================================================================
# STATUS
# =============================================================================


@dataclass
class MailboxSyncStatus:
    mailbox: str
    last_sync_time: Optional[datetime] = None
    items_evaluated: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_deleted: int = 0
    items_unchanged: int = 0
    items_synced: int = 0
    errors: int = 0
    status: str = 'Pending'


@dataclass
class SyncStatus:
    is_running: bool = False
    sync_enabled: bool = True
    last_sync_time: Optional[datetime] = None
    next_scheduled_sync: Optional[datetime] = None
    total_items_synced: int = 0
    total_errors: int = 0
    mailbox_statuses: Dict[str, MailboxSyncStatus] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['last_sync_time'] = to_iso_utc(self.last_sync_time)
        data['next_scheduled_sync'] = to_iso_utc(self.next_scheduled_sync)
        for name, mailbox_status in self.mailbox_statuses.items():
            data['mailbox_statuses'][name]['last_sync_time'] = to_iso_utc(mailbox_status.last_sync_time)
        return data
