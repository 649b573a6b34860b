# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Microsoft OAuth - App-only (client credentials) authentication for Graph
"""
import logging
import threading
from datetime import timedelta
from typing import Dict, Optional

import msal

import config
from utils.timezone import utc_now

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when no Graph token can be obtained"""


class MicrosoftAuth:
    """Acquires and caches app-only Graph tokens for one app registration"""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str,
                 scopes=None, label: str = 'graph'):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes or config.GRAPH_SCOPES
        self.label = label

        self._app = None
        self._access_token = None
        self._expires_at = None
        self._token_lock = threading.Lock()

    def initialize(self):
        """Build the MSAL client and fetch a first token so bad credentials fail at startup"""
        try:
            self._app = msal.ConfidentialClientApplication(
                self.client_id,
                authority=f"https://login.microsoftonline.com/{self.tenant_id}",
                client_credential=self.client_secret,
            )
            self.refresh_access_token()
            logger.info(f"✅ Graph auth initialized ({self.label})")
        except Exception as e:
            logger.error(f"Failed to initialize Graph auth ({self.label}): {e}")
            raise

    def is_authenticated(self) -> bool:
        return bool(self._access_token) and not self._is_token_expired()

    def _is_token_expired(self) -> bool:
        if not self._expires_at:
            return True
        return utc_now() >= (self._expires_at - timedelta(minutes=5))

    def refresh_access_token(self) -> bool:
        """Fetch a new token; MSAL serves it from its own cache when still valid"""
        if self._app is None:
            raise AuthenticationError(f"Graph auth ({self.label}) not initialized. Call initialize() first.")

        with self._token_lock:
            result = self._app.acquire_token_for_client(scopes=self.scopes)
            if 'access_token' not in result:
                error = result.get('error_description') or result.get('error') or 'unknown error'
                logger.error(f"Token acquisition failed ({self.label}): {error}")
                raise AuthenticationError(f"Graph token acquisition failed: {error}")

            self._access_token = result['access_token']
            self._expires_at = utc_now() + timedelta(seconds=int(result.get('expires_in', 3599)))
            logger.debug(f"Token refreshed ({self.label}), expires {self._expires_at.isoformat()}")
            return True

    def invalidate(self):
        """Forget the rejected token here and in MSAL's cache so the next refresh asks Entra ID"""
        with self._token_lock:
            rejected = self._access_token
            self._access_token = None
            self._expires_at = None
            if self._app is None or not rejected:
                return

            cache = self._app.token_cache
            stale = list(cache.search(cache.CredentialType.ACCESS_TOKEN, query={'secret': rejected}))
            for entry in stale:
                cache.remove_at(entry)
            logger.debug(f"Evicted {len(stale)} cached token(s) ({self.label})")

    def get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Get authorization headers for API calls"""
        if not self.is_authenticated():
            self.refresh_access_token()

        headers = {
            'Authorization': f'Bearer {self._access_token}',
            'Content-Type': 'application/json'
        }
        if extra:
            headers.update(extra)
        return headers
