"""
Logging - JSON sync events, console formatting and the in-memory buffer behind /api/logs
"""
import json
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Dict, Any, List, Optional

import pytz

from utils.timezone import utc_now

SERVICE_NAME = "exchange-calendar-sync"


def log_prefix(mapping_name: Optional[str]) -> str:
    """Format a mapping name as a log prefix like '[alpha -> beta] '"""
    return f"[{mapping_name}] " if mapping_name else ""


def _event_level(event_type: str) -> int:
    lowered = event_type.lower()
    if "error" in lowered or "failed" in lowered:
        return logging.ERROR
    if "warning" in lowered or "cancelled" in lowered:
        return logging.WARNING
    return logging.INFO


class StructuredLogger:
    """Emits one JSON document per sync event so log pipelines can index the fields"""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, event_type: str, fields: Dict[str, Any]):
        document = {
            "timestamp": utc_now().isoformat(),
            "service": SERVICE_NAME,
            "event_type": event_type,
            "logger": self.name,
        }
        document.update(fields)
        self.logger.log(level, json.dumps(document, default=str))

    def log_sync_event(self, event_type: str, details: Dict[str, Any]):
        """sync_started, sync_completed, mapping_failed, ... at a level derived from the name"""
        self._emit(_event_level(event_type), event_type, details)

    def log_performance(self, operation: str, duration_seconds: float,
                        item_count: Optional[int] = None, success: bool = True):
        fields = {
            "operation": operation,
            "duration_seconds": round(duration_seconds, 3),
            "success": success,
        }
        if item_count is not None:
            fields["item_count"] = item_count
            fields["items_per_second"] = round(item_count / duration_seconds, 2) if duration_seconds > 0 else 0
        self._emit(logging.INFO, "performance", fields)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; StructuredLogger output passes through untouched"""

    def format(self, record):
        message = record.getMessage()
        if message.startswith('{'):
            try:
                json.loads(message)
                return message
            except ValueError:
                pass

        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=pytz.UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class InMemoryLogHandler(logging.Handler):
    """Keeps the most recent log records for the /api/logs endpoint"""

    def __init__(self, max_records: int = 1000):
        super().__init__()
        self._records = deque(maxlen=max_records)
        self._records_lock = threading.Lock()

    def emit(self, record: logging.LogRecord):
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=pytz.UTC).isoformat(),
            "level": record.levelname,
            "levelno": record.levelno,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = logging.Formatter().formatException(record.exc_info)

        with self._records_lock:
            self._records.append(entry)

    def get_records(self, min_level: str = None, mapping: str = None, limit: int = 200) -> List[Dict]:
        """Newest-last records, optionally filtered by minimum level and mapping name"""
        with self._records_lock:
            records = list(self._records)

        if min_level:
            threshold = logging.getLevelName(min_level.upper())
            if isinstance(threshold, int):
                records = [r for r in records if r["levelno"] >= threshold]

        if mapping:
            marker = log_prefix(mapping).strip()
            records = [r for r in records if marker in r["message"]]

        if limit and limit > 0:
            records = records[-limit:]
        return records

    def clear(self):
        with self._records_lock:
            self._records.clear()


def configure_logging(level: str = 'INFO', structured: bool = True,
                      buffer_size: int = 1000) -> InMemoryLogHandler:
    """Install console + in-memory handlers on the root logger"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if isinstance(handler, InMemoryLogHandler) or getattr(handler, '_calendar_sync', False):
            root.removeHandler(handler)

    console = logging.StreamHandler()
    console._calendar_sync = True
    if structured:
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    root.addHandler(console)

    memory_handler = InMemoryLogHandler(max_records=buffer_size)
    root.addHandler(memory_handler)

    # Graph and EWS transports are chatty at INFO
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('exchangelib').setLevel(logging.WARNING)
    logging.getLogger('msal').setLevel(logging.WARNING)

    return memory_handler
