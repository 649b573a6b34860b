# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
EWS Reader - Reads source mailboxes from Exchange On-Premise via EWS impersonation
"""
import logging
from datetime import date, datetime
from typing import List, Optional

import pytz
from exchangelib import Account, Configuration, Credentials, EWSDateTime, IMPERSONATION, UTC
from exchangelib.protocol import BaseProtocol, NoVerifyHTTPAdapter

from models import CalendarItem
from utils.logger import log_prefix
from utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)

VIEW_FIELDS = (
    'id', 'subject', 'body', 'start', 'end', 'location', 'is_all_day',
    'required_attendees', 'optional_attendees', 'organizer', 'categories',
    'is_recurring', 'recurrence', 'last_modified_time', 'is_cancelled',
)


def _to_utc(value) -> Optional[datetime]:
    """EWSDateTime/EWSDate to a plain aware UTC datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return ensure_utc(value)
        return datetime.fromtimestamp(value.timestamp(), tz=pytz.UTC)
    if isinstance(value, date):
        return ensure_utc(value)
    raise ValueError(f"Unsupported EWS date value: {value!r}")


def _to_ews_datetime(value: datetime) -> EWSDateTime:
    """Aware datetime to an EWSDateTime in UTC, for view bounds"""
    if isinstance(value, EWSDateTime):
        return value.astimezone(UTC)
    # from_datetime only takes a plain datetime, so convert with pytz first
    return EWSDateTime.from_datetime(ensure_utc(value))


def _addresses(attendees) -> List[str]:
    addresses = []
    for attendee in attendees or []:
        mailbox = getattr(attendee, 'mailbox', None)
        address = getattr(mailbox, 'email_address', None)
        if address:
            addresses.append(address)
    return addresses


def normalize_appointment(appointment, mailbox: str) -> CalendarItem:
    """Map an exchangelib CalendarItem onto our CalendarItem"""
    if not appointment.id:
        raise ValueError("Appointment has no id")

    start = _to_utc(appointment.start)
    end = _to_utc(appointment.end)
    if start is None or end is None:
        raise ValueError(f"Appointment {appointment.id[:12]}... has no start/end")

    recurrence = getattr(appointment, 'recurrence', None)
    pattern = getattr(recurrence, 'pattern', None) if recurrence else None
    categories = appointment.categories or []
    organizer = getattr(appointment, 'organizer', None)

    return CalendarItem(
        id=appointment.id,
        subject=appointment.subject or '',
        body=str(appointment.body) if appointment.body is not None else None,
        start=start,
        end=end,
        location=appointment.location or '',
        is_all_day=bool(appointment.is_all_day),
        required_attendees=_addresses(appointment.required_attendees),
        optional_attendees=_addresses(appointment.optional_attendees),
        organizer=getattr(organizer, 'email_address', None),
        categories=', '.join(categories) if categories else None,
        is_recurring=bool(appointment.is_recurring),
        recurrence_pattern=str(pattern) if pattern is not None else None,
        last_modified=_to_utc(appointment.last_modified_time) or utc_now(),
        source_mailbox=mailbox,
        is_cancelled=bool(getattr(appointment, 'is_cancelled', False)),
    )


class EwsCalendarReader:
    """Source adapter for mailboxes hosted on Exchange On-Premise"""

    def __init__(self, server_url: str, username: str, password: str, domain: str = '',
                 verify_ssl: bool = True):
        self.server_url = server_url
        self.username = username
        self.password = password
        self.domain = domain
        self.verify_ssl = verify_ssl
        self._configuration = None

    def initialize(self):
        try:
            user = f"{self.domain}\\{self.username}" if self.domain else self.username
            credentials = Credentials(username=user, password=self.password)

            if not self.verify_ssl:
                # Process-wide in exchangelib; only affects EWS connections
                logger.warning("EWS TLS certificate verification is disabled")
                BaseProtocol.HTTP_ADAPTER_CLS = NoVerifyHTTPAdapter

            self._configuration = Configuration(service_endpoint=self.server_url, credentials=credentials)
            logger.info("Exchange On-Premise (EWS) reader initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Exchange On-Premise reader: {e}")
            raise

    def _account(self, mailbox: str) -> Account:
        return Account(
            primary_smtp_address=mailbox,
            config=self._configuration,
            autodiscover=False,
            access_type=IMPERSONATION,
        )

    def get_calendar_items(self, mailbox: str, start_date: datetime, end_date: datetime,
                           mapping_name: Optional[str] = None) -> List[CalendarItem]:
        """
        Fetch expanded calendar items for a mailbox, impersonating it

        Connection and auth failures propagate. An item that can't be
        normalized is logged and skipped.
        """
        if self._configuration is None:
            raise RuntimeError("Reader not initialized. Call initialize() first.")

        prefix = log_prefix(mapping_name)
        logger.info(f"{prefix}Fetching calendar items for {mailbox} from {start_date.isoformat()} to {end_date.isoformat()}")

        try:
            account = self._account(mailbox)
            view = account.calendar.view(
                start=_to_ews_datetime(start_date),
                end=_to_ews_datetime(end_date),
            ).only(*VIEW_FIELDS)
            appointments = list(view)
        except Exception as e:
            logger.error(f"{prefix}Failed to fetch calendar items for {mailbox}: {e}")
            raise

        items = []
        for appointment in appointments:
            try:
                if isinstance(appointment, Exception):
                    # exchangelib yields per-item errors inline
                    raise appointment
                items.append(normalize_appointment(appointment, mailbox))
            except Exception as e:
                logger.warning(f"{prefix}Failed to process calendar item: {getattr(appointment, 'subject', '?')} ({e})")

        logger.info(f"{prefix}Retrieved {len(items)} calendar items for {mailbox}")
        return items
