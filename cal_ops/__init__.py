"""
Calendar operations - source readers and the destination writer
"""
from datetime import datetime
from typing import List, Optional, Protocol

from models import CalendarItem


class CalendarSource(Protocol):
    """What the sync engine needs from a source mailbox reader"""

    def initialize(self) -> None:
        ...

    def get_calendar_items(self, mailbox: str, start_date: datetime, end_date: datetime,
                           mapping_name: Optional[str] = None) -> List[CalendarItem]:
        ...
