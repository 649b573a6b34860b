# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Calendar Reader - Reads source mailboxes from Exchange Online via Microsoft Graph
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from auth.microsoft_auth import MicrosoftAuth
from cal_ops.graph_client import GraphClient, UTC_PREFERENCE
from models import CalendarItem
from utils.logger import log_prefix
from utils.timezone import parse_graph_datetime, parse_iso_utc, utc_now

logger = logging.getLogger(__name__)

SELECT_FIELDS = [
    'id', 'subject', 'body', 'start', 'end', 'location', 'isAllDay',
    'attendees', 'organizer', 'categories', 'recurrence', 'type',
    'isCancelled', 'lastModifiedDateTime'
]


def format_recurrence(recurrence: Optional[Dict]) -> Optional[str]:
    """Render a Graph recurrence pattern as 'weekly;interval=1;daysOfWeek=monday'"""
    if not recurrence:
        return None

    pattern = recurrence.get('pattern') or {}
    if not pattern.get('type'):
        return None

    parts = [pattern['type'], f"interval={pattern.get('interval', 1)}"]
    days = pattern.get('daysOfWeek')
    if days:
        parts.append(f"daysOfWeek={','.join(days)}")
    if pattern.get('dayOfMonth'):
        parts.append(f"dayOfMonth={pattern['dayOfMonth']}")
    return ';'.join(parts)


def _attendee_addresses(attendees: List[Dict], attendee_type: str) -> List[str]:
    addresses = []
    for attendee in attendees or []:
        if (attendee.get('type') or '').lower() != attendee_type:
            continue
        address = (attendee.get('emailAddress') or {}).get('address')
        if address:
            addresses.append(address)
    return addresses


def normalize_graph_event(event: Dict, mailbox: str) -> CalendarItem:
    """Map a Graph event resource onto a CalendarItem"""
    if not event.get('id'):
        raise ValueError("Graph event has no id")

    start = parse_graph_datetime(event.get('start'))
    end = parse_graph_datetime(event.get('end'))
    if start is None or end is None:
        raise ValueError(f"Graph event {event['id'][:12]}... has no usable start/end")

    categories = event.get('categories') or []

    return CalendarItem(
        id=event['id'],
        subject=event.get('subject') or '',
        body=(event.get('body') or {}).get('content'),
        start=start,
        end=end,
        location=(event.get('location') or {}).get('displayName') or '',
        is_all_day=bool(event.get('isAllDay', False)),
        required_attendees=_attendee_addresses(event.get('attendees'), 'required'),
        optional_attendees=_attendee_addresses(event.get('attendees'), 'optional'),
        organizer=((event.get('organizer') or {}).get('emailAddress') or {}).get('address'),
        categories=', '.join(categories) if categories else None,
        is_recurring=event.get('recurrence') is not None or event.get('type') in ('occurrence', 'exception'),
        recurrence_pattern=format_recurrence(event.get('recurrence')),
        last_modified=parse_iso_utc(event.get('lastModifiedDateTime')) or utc_now(),
        source_mailbox=mailbox,
        is_cancelled=bool(event.get('isCancelled', False)),
    )


class GraphCalendarReader:
    """Source adapter for mailboxes hosted in Exchange Online"""

    def __init__(self, auth_manager: MicrosoftAuth = None, client: GraphClient = None, page_size: int = 250):
        self.auth = auth_manager
        self.client = client
        self.page_size = page_size

    def initialize(self):
        if self.client is not None:
            return
        try:
            self.auth.initialize()
            self.client = GraphClient(self.auth)
            logger.info("Exchange Online source reader initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Exchange Online source reader: {e}")
            raise

    def get_calendar_items(self, mailbox: str, start_date: datetime, end_date: datetime,
                           mapping_name: Optional[str] = None) -> List[CalendarItem]:
        """
        Fetch expanded calendar items for a mailbox within a window

        Connection and auth failures propagate. An item that can't be
        normalized is logged and skipped.
        """
        if self.client is None:
            raise RuntimeError("Reader not initialized. Call initialize() first.")

        prefix = log_prefix(mapping_name)
        logger.info(f"{prefix}Fetching calendar items for {mailbox} from {start_date.isoformat()} to {end_date.isoformat()}")

        params = {
            'startDateTime': start_date.strftime('%Y-%m-%dT%H:%M:%SZ'),
            'endDateTime': end_date.strftime('%Y-%m-%dT%H:%M:%SZ'),
            '$select': ','.join(SELECT_FIELDS),
            '$top': self.page_size,
        }

        try:
            events = self.client.get_all(f"users/{mailbox}/calendarView", params=params, prefer=UTC_PREFERENCE)
        except Exception as e:
            logger.error(f"{prefix}Failed to fetch calendar items for {mailbox}: {e}")
            raise

        items = []
        for event in events:
            try:
                items.append(normalize_graph_event(event, mailbox))
            except Exception as e:
                logger.warning(f"{prefix}Failed to process calendar item: {event.get('subject')} ({e})")

        cancelled_count = sum(1 for i in items if i.is_cancelled)
        if cancelled_count > 0:
            logger.info(f"{prefix}Found {cancelled_count} cancelled instances")

        logger.info(f"{prefix}Retrieved {len(items)} calendar items for {mailbox}")
        return items
