# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Calendar Writer - Handles all write operations to destination mailboxes in Exchange Online
"""
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import requests

from auth.microsoft_auth import MicrosoftAuth
from cal_ops.graph_client import GraphClient, SUPPRESS_NOTIFICATIONS, UTC_PREFERENCE
from models import CalendarItem, SyncResult
from utils.logger import log_prefix
from utils.timezone import parse_iso_utc, to_graph_datetime, to_iso_utc

logger = logging.getLogger(__name__)

# Legacy named MAPI properties in PS_PUBLIC_STRINGS that link a destination
# event back to its source item
PUBLIC_STRINGS_GUID = '{00020329-0000-0000-C000-000000000046}'
SOURCE_ID_PROPERTY = f'String {PUBLIC_STRINGS_GUID} Name SourceExchangeId'
SOURCE_LAST_MODIFIED_PROPERTY = f'String {PUBLIC_STRINGS_GUID} Name SourceLastModified'


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def _marker_values(event: Dict) -> Dict[str, str]:
    # Graph echoes property ids with a lowercased GUID
    return {
        (prop.get('id') or '').lower(): prop.get('value')
        for prop in event.get('singleValueExtendedProperties') or []
    }


def build_event_payload(item: CalendarItem) -> Dict:
    """Graph event body for a source item; attendees are never copied"""
    return {
        'subject': item.subject,
        'body': {
            'contentType': 'text',
            'content': item.body or '',
        },
        'start': to_graph_datetime(item.start),
        'end': to_graph_datetime(item.end),
        'location': {'displayName': item.location or ''},
        'isAllDay': item.is_all_day,
        'categories': item.category_list(),
        'singleValueExtendedProperties': [
            {'id': SOURCE_ID_PROPERTY, 'value': item.id},
            {'id': SOURCE_LAST_MODIFIED_PROPERTY, 'value': to_iso_utc(item.last_modified)},
        ],
    }


class GraphCalendarWriter:
    """Destination adapter: marker lookup, change detection, writes and deletes"""

    def __init__(self, auth_manager: MicrosoftAuth = None, client: GraphClient = None):
        self.auth = auth_manager
        self.client = client
        self._mailbox_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def initialize(self):
        if self.client is not None:
            return
        try:
            self.auth.initialize()
            self.client = GraphClient(self.auth)
            logger.info("Exchange Online destination writer initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Exchange Online destination writer: {e}")
            raise

    def _mailbox_lock(self, mailbox: str) -> threading.Lock:
        with self._locks_guard:
            return self._mailbox_locks.setdefault(mailbox.lower(), threading.Lock())

    def find_existing_event(self, mailbox: str, source_id: str,
                            mapping_name: Optional[str] = None) -> Tuple[Optional[Dict], Optional[datetime]]:
        """
        Look up the destination event carrying a source id marker.

        Returns (event, stored_last_modified), or (None, None) when absent.
        Lookup failures propagate so callers never create a duplicate
        after a failed check.
        """
        params = {
            '$filter': (
                f"singleValueExtendedProperties/Any(ep: ep/id eq '{SOURCE_ID_PROPERTY}' "
                f"and ep/value eq '{_odata_literal(source_id)}')"
            ),
            '$expand': (
                f"singleValueExtendedProperties($filter=id eq '{SOURCE_ID_PROPERTY}' "
                f"or id eq '{SOURCE_LAST_MODIFIED_PROPERTY}')"
            ),
            '$select': 'id,subject',
            '$top': 2,
        }

        data = self.client.get_json(f"users/{mailbox}/events", params=params)
        matches = data.get('value', [])
        if not matches:
            return None, None

        if len(matches) > 1:
            logger.warning(f"{log_prefix(mapping_name)}Multiple destination events carry source id "
                           f"{source_id[:20]}... in {mailbox}; using the first")

        event = matches[0]
        stored = _marker_values(event).get(SOURCE_LAST_MODIFIED_PROPERTY.lower())
        return event, parse_iso_utc(stored) if stored else None

    def sync_item(self, item: CalendarItem, force_update: bool = False) -> SyncResult:
        """Create or update the destination copy of one item. Never raises."""
        mailbox = item.destination_mailbox or item.source_mailbox
        prefix = log_prefix(item.mapping_name)

        try:
            with self._mailbox_lock(mailbox):
                existing, stored_modified = self.find_existing_event(mailbox, item.id, item.mapping_name)

                if existing and not force_update and stored_modified is not None \
                        and item.last_modified is not None and stored_modified >= item.last_modified:
                    logger.debug(f"{prefix}No change: {item.subject}")
                    return SyncResult.NO_CHANGE

                payload = build_event_payload(item)
                if existing:
                    self.client.request('PATCH', f"users/{mailbox}/events/{existing['id']}",
                                        json_body=payload, prefer=SUPPRESS_NOTIFICATIONS)
                    logger.info(f"{prefix}✅ Updated event: {item.subject}")
                    return SyncResult.UPDATED

                self._create_event(mailbox, item, payload)
                logger.info(f"{prefix}✅ Created event: {item.subject}")
                return SyncResult.CREATED

        except Exception as e:
            logger.error(f"{prefix}❌ Failed to sync item '{item.subject}' to {mailbox}: {e}")
            return SyncResult.FAILED

    def _create_event(self, mailbox: str, item: CalendarItem, payload: Dict):
        """
        POST a new event, never twice for the same marker

        After a read timeout or a dropped connection Graph may have stored
        the event anyway. The marker is looked up again instead of resending;
        if it is still missing the error propagates and the next cycle retries.
        Caller holds the mailbox lock.
        """
        try:
            self.client.request_non_idempotent('POST', f"users/{mailbox}/events",
                                               json_body=payload, prefer=SUPPRESS_NOTIFICATIONS)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            landed, _ = self.find_existing_event(mailbox, item.id, item.mapping_name)
            if landed is None:
                raise
            logger.warning(f"{log_prefix(item.mapping_name)}Create of '{item.subject}' reported "
                           f"{type(e).__name__} but the event was stored")

    def delete_item(self, destination_mailbox: str, source_id: str,
                    mapping_name: Optional[str] = None) -> bool:
        """Delete the destination copy of a source item; absent counts as deleted"""
        prefix = log_prefix(mapping_name)

        try:
            with self._mailbox_lock(destination_mailbox):
                existing, _ = self.find_existing_event(destination_mailbox, source_id, mapping_name)
                if not existing:
                    logger.debug(f"{prefix}Nothing to delete for source id {source_id[:20]}...")
                    return True

                response = self.client.request('DELETE', f"users/{destination_mailbox}/events/{existing['id']}",
                                               prefer=SUPPRESS_NOTIFICATIONS, allow_statuses=(404,))
                if response.status_code == 404:
                    logger.debug(f"{prefix}Event already gone: {existing.get('subject')}")
                else:
                    logger.info(f"{prefix}🗑️ Deleted event: {existing.get('subject')}")
                return True

        except Exception as e:
            logger.error(f"{prefix}❌ Failed to delete event for source id {source_id[:20]}... "
                         f"from {destination_mailbox}: {e}")
            return False

    def list_synced_source_ids(self, destination_mailbox: str, start_date: datetime, end_date: datetime,
                               mapping_name: Optional[str] = None) -> List[str]:
        """Source ids of every marked destination event in the window; [] on failure"""
        prefix = log_prefix(mapping_name)
        params = {
            'startDateTime': start_date.strftime('%Y-%m-%dT%H:%M:%SZ'),
            'endDateTime': end_date.strftime('%Y-%m-%dT%H:%M:%SZ'),
            '$select': 'id',
            '$expand': f"singleValueExtendedProperties($filter=id eq '{SOURCE_ID_PROPERTY}')",
            '$top': 250,
        }

        try:
            events = self.client.get_all(f"users/{destination_mailbox}/calendarView",
                                         params=params, prefer=UTC_PREFERENCE)
        except Exception as e:
            logger.error(f"{prefix}Failed to list synced events in {destination_mailbox}: {e}")
            return []

        source_ids = []
        for event in events:
            source_id = _marker_values(event).get(SOURCE_ID_PROPERTY.lower())
            if source_id:
                source_ids.append(source_id)

        logger.debug(f"{prefix}Found {len(source_ids)} synced events in {destination_mailbox}")
        return source_ids
