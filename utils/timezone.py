# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Timezone utilities - everything the sync stores or compares is aware UTC
"""
import re
from datetime import date, datetime, time
from typing import Optional

import pytz

# Graph returns up to 7 fractional digits, fromisoformat only takes 6
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')

# Windows zone names Graph may echo back when no UTC preference was honoured
_WINDOWS_ZONES = {
    'Central Standard Time': 'America/Chicago',
    'Eastern Standard Time': 'America/New_York',
    'Mountain Standard Time': 'America/Denver',
    'Pacific Standard Time': 'America/Los_Angeles',
    'GMT Standard Time': 'Europe/London',
    'W. Europe Standard Time': 'Europe/Berlin',
    'Romance Standard Time': 'Europe/Paris',
    'Coordinated Universal Time': 'UTC',
}


def utc_now() -> datetime:
    """Get current time as an aware UTC datetime"""
    return datetime.now(pytz.UTC)


def ensure_utc(dt) -> Optional[datetime]:
    """Normalize a datetime (or date) to aware UTC. Naive values are taken as UTC."""
    if dt is None:
        return None

    if not isinstance(dt, datetime) and isinstance(dt, date):
        dt = datetime.combine(dt, time.min)

    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def parse_iso_utc(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into aware UTC, or None if it can't be parsed"""
    if not value:
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    text = _FRACTION_RE.sub(r'\1', text)

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_graph_datetime(field: dict) -> Optional[datetime]:
    """Convert Microsoft Graph {"dateTime": str, "timeZone": str} into an aware UTC datetime.

    Args:
        field: dict with keys 'dateTime' and 'timeZone'
    Returns:
        datetime in UTC or None if missing.
    """
    if not field or not field.get('dateTime'):
        return None

    dt_str = _FRACTION_RE.sub(r'\1', field.get('dateTime'))
    tz_label = field.get('timeZone', 'UTC') or 'UTC'

    try:
        parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except ValueError:
        return None

    if parsed.tzinfo is not None:
        return parsed.astimezone(pytz.UTC)

    zone_name = _WINDOWS_ZONES.get(tz_label, tz_label)
    try:
        tz = pytz.timezone(zone_name)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC

    return tz.localize(parsed).astimezone(pytz.UTC)


def to_graph_datetime(dt: datetime) -> dict:
    """Format an aware datetime as a Graph dateTimeTimeZone in UTC"""
    return {
        'dateTime': ensure_utc(dt).strftime('%Y-%m-%dT%H:%M:%S'),
        'timeZone': 'UTC'
    }


def to_iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 in UTC with an explicit offset"""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def format_duration(seconds: float) -> str:
    """Human-friendly elapsed time: 1h2m3s, 2m3s or 4.5s"""
    if seconds >= 3600:
        hours, rest = divmod(int(seconds), 3600)
        minutes, secs = divmod(rest, 60)
        return f"{hours}h{minutes}m{secs}s"
    if seconds >= 60:
        minutes, secs = divmod(int(seconds), 60)
        return f"{minutes}m{secs}s"
    return f"{seconds:.1f}s"
