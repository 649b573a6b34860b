"""
Shared helpers: retries, UTC time handling and logging
"""
from utils.retry import retry_with_backoff
from utils.timezone import (
    utc_now,
    ensure_utc,
    parse_iso_utc,
    parse_graph_datetime,
    to_graph_datetime,
    to_iso_utc,
    format_duration,
)
from utils.logger import (
    StructuredLogger,
    JsonFormatter,
    InMemoryLogHandler,
    configure_logging,
    log_prefix,
)
