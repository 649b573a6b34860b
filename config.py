# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Environment-based configuration for Exchange Calendar Sync
"""
import json
import logging
import os
from typing import Dict, List, Optional

from models import MailboxMapping, SourceType, merge_mailbox_mappings

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the settings can't support a sync run"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


# Environment Detection
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')
DEBUG = ENVIRONMENT == 'development'

# Exchange On-Premise (EWS) source
EWS_SERVER_URL = os.environ.get('EWS_SERVER_URL', '')
EWS_USERNAME = os.environ.get('EWS_USERNAME', '')
EWS_PASSWORD = os.environ.get('EWS_PASSWORD', '')
EWS_DOMAIN = os.environ.get('EWS_DOMAIN', '')
EWS_VERIFY_SSL = _env_bool('EWS_VERIFY_SSL', 'True')

# Exchange Online destination (app registration, client credentials)
TENANT_ID = os.environ.get('TENANT_ID', '')
CLIENT_ID = os.environ.get('CLIENT_ID', '')
CLIENT_SECRET = os.environ.get('CLIENT_SECRET', '')

# Exchange Online source - defaults to the destination app registration
SOURCE_TENANT_ID = os.environ.get('SOURCE_TENANT_ID', TENANT_ID)
SOURCE_CLIENT_ID = os.environ.get('SOURCE_CLIENT_ID', CLIENT_ID)
SOURCE_CLIENT_SECRET = os.environ.get('SOURCE_CLIENT_SECRET', CLIENT_SECRET)

GRAPH_BASE_URL = os.environ.get('GRAPH_BASE_URL', 'https://graph.microsoft.com/v1.0')
GRAPH_SCOPES = ['https://graph.microsoft.com/.default']

# Sync Settings
SYNC_INTERVAL_MINUTES = int(os.environ.get('SYNC_INTERVAL_MINUTES', 5))
LOOKBACK_DAYS = int(os.environ.get('LOOKBACK_DAYS', 30))
LOOK_FORWARD_DAYS = int(os.environ.get('LOOK_FORWARD_DAYS', 30))
THROTTLE_DELAY_SECONDS = float(os.environ.get('THROTTLE_DELAY_SECONDS', 0.1))
STARTUP_DELAY_SECONDS = int(os.environ.get('STARTUP_DELAY_SECONDS', 5))

# Persistence
DATA_PATH = os.environ.get('DATA_PATH', './data')
ENABLE_STATE_PERSISTENCE = _env_bool('ENABLE_STATE_PERSISTENCE', 'True')

# Retry Settings
MAX_RETRIES = int(os.environ.get('MAX_RETRIES', 3))
BASE_DELAY = float(os.environ.get('BASE_DELAY', 1.0))

# Logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
STRUCTURED_LOGGING = _env_bool('STRUCTURED_LOGGING', 'True')
LOG_BUFFER_SIZE = int(os.environ.get('LOG_BUFFER_SIZE', 1000))

# Control surface
PORT = int(os.environ.get('PORT', 5000))
API_ALLOW_REMOTE = _env_bool('API_ALLOW_REMOTE', 'False')

# Mailbox mappings: settings file, overridable from the environment
SETTINGS_FILE = os.environ.get('SETTINGS_FILE', '')
DEFAULT_SETTINGS_FILES = ['config/settings.json', 'settings.json']

# Development Settings
if DEBUG:
    LOG_LEVEL = 'DEBUG'
    STRUCTURED_LOGGING = False
    STARTUP_DELAY_SECONDS = 0


def read_settings_file(path: Optional[str] = None) -> Dict:
    """Load the JSON settings file, or {} when none exists"""
    candidates = [path] if path else ([SETTINGS_FILE] if SETTINGS_FILE else DEFAULT_SETTINGS_FILES)

    for candidate in candidates:
        if candidate and os.path.exists(candidate):
            with open(candidate, 'r') as f:
                data = json.load(f)
            logger.info(f"Loaded settings from {candidate}")
            return data

    if path:
        raise ConfigurationError([f"Settings file not found: {path}"])
    return {}


def load_mailbox_mappings(settings_data: Optional[Dict] = None,
                          environ: Optional[Dict[str, str]] = None) -> List[MailboxMapping]:
    """
    Build the ordered mapping list for a sync cycle.

    Explicit mappings come from MAILBOX_MAPPINGS (JSON list) or the settings
    file's "mailboxMappings"; legacy mailboxes from MAILBOXES_TO_MONITOR
    (comma separated) or "mailboxesToMonitor".
    """
    environ = os.environ if environ is None else environ
    if settings_data is None:
        settings_data = read_settings_file()

    raw_mappings = settings_data.get('mailboxMappings', [])
    if environ.get('MAILBOX_MAPPINGS'):
        try:
            raw_mappings = json.loads(environ['MAILBOX_MAPPINGS'])
        except json.JSONDecodeError as e:
            raise ConfigurationError([f"MAILBOX_MAPPINGS is not valid JSON: {e}"])

    legacy = settings_data.get('mailboxesToMonitor', [])
    if environ.get('MAILBOXES_TO_MONITOR'):
        legacy = [m.strip() for m in environ['MAILBOXES_TO_MONITOR'].split(',')]

    explicit = []
    errors = []
    for raw in raw_mappings:
        try:
            explicit.append(MailboxMapping.from_dict(raw))
        except (ValueError, AttributeError) as e:
            errors.append(str(e))

    if errors:
        raise ConfigurationError(errors)

    return merge_mailbox_mappings(explicit, legacy)


def validate_settings(mappings: List[MailboxMapping],
                      ews: Optional[Dict[str, str]] = None,
                      online_source: Optional[Dict[str, str]] = None,
                      destination: Optional[Dict[str, str]] = None):
    """Fail fast on settings that can't support the configured mappings"""
    ews = ews if ews is not None else {
        'server_url': EWS_SERVER_URL, 'username': EWS_USERNAME, 'password': EWS_PASSWORD,
    }
    online_source = online_source if online_source is not None else {
        'tenant_id': SOURCE_TENANT_ID, 'client_id': SOURCE_CLIENT_ID, 'client_secret': SOURCE_CLIENT_SECRET,
    }
    destination = destination if destination is not None else {
        'tenant_id': TENANT_ID, 'client_id': CLIENT_ID, 'client_secret': CLIENT_SECRET,
    }

    errors = []
    if not mappings:
        errors.append("No mailboxes configured. Add mailboxMappings or mailboxesToMonitor")

    has_on_premise = any(m.source_type == SourceType.EXCHANGE_ON_PREMISE for m in mappings)
    has_online = any(m.source_type == SourceType.EXCHANGE_ONLINE for m in mappings)

    if has_on_premise:
        for key, env_name in (('server_url', 'EWS_SERVER_URL'), ('username', 'EWS_USERNAME'),
                              ('password', 'EWS_PASSWORD')):
            if not ews.get(key):
                errors.append(f"{env_name} is required when using Exchange On-Premise as source")

    if has_online:
        for key, env_name in (('tenant_id', 'SOURCE_TENANT_ID'), ('client_id', 'SOURCE_CLIENT_ID'),
                              ('client_secret', 'SOURCE_CLIENT_SECRET')):
            if not online_source.get(key):
                errors.append(f"{env_name} is required when using Exchange Online as source")

    for key, env_name in (('tenant_id', 'TENANT_ID'), ('client_id', 'CLIENT_ID'),
                          ('client_secret', 'CLIENT_SECRET')):
        if not destination.get(key):
            errors.append(f"{env_name} is required for the destination")

    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        raise ConfigurationError(errors)

    sources = [label for label, used in (("Exchange On-Premise (EWS)", has_on_premise),
                                         ("Exchange Online (Graph)", has_online)) if used]
    logger.info(f"Configuration validation passed - source types: {', '.join(sources)}")
