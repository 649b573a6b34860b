# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Graph Client - Authenticated Microsoft Graph requests with refresh, throttling and retries
"""
import logging
from typing import Dict, Iterator, List, Optional

import requests

import config
from utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

UTC_PREFERENCE = 'outlook.timezone="UTC"'
SUPPRESS_NOTIFICATIONS = 'outlook.calendar.disableSendUpdates'


class GraphApiError(Exception):
    """Non-success response from Microsoft Graph"""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Graph API error {status_code}: {message}")


class GraphThrottledError(GraphApiError):
    """429/503 from Graph; retry_after is in seconds"""

    def __init__(self, status_code: int, message: str, retry_after: Optional[float] = None):
        super().__init__(status_code, message)
        self.retry_after = retry_after


RETRYABLE_ERRORS = (
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
    GraphThrottledError,
)

# Graph refused the request or never received it, so resending cannot duplicate a create
RESEND_SAFE_ERRORS = (
    requests.exceptions.ConnectTimeout,
    GraphThrottledError,
)


class GraphClient:
    """Thin wrapper over requests for one Graph app registration"""

    def __init__(self, auth_manager, base_url: str = None, timeout: int = 30,
                 max_retries: int = None, base_delay: float = None, session=None):
        self.auth = auth_manager
        self.base_url = (base_url or config.GRAPH_BASE_URL).rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

        # Bind retry policy per instance so tests can turn the delay off
        max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        base_delay = config.BASE_DELAY if base_delay is None else base_delay
        self.request = retry_with_backoff(
            max_retries=max_retries, base_delay=base_delay, retry_on=RETRYABLE_ERRORS,
        )(self._request_once)
        # For POSTs: a read timeout may mean the write landed, so it is not retried here
        self.request_non_idempotent = retry_with_backoff(
            max_retries=max_retries, base_delay=base_delay, retry_on=RESEND_SAFE_ERRORS,
        )(self._request_once)

    def url(self, path: str) -> str:
        if path.startswith('http'):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request_once(self, method: str, path: str, params: Dict = None, json_body: Dict = None,
                      prefer: Optional[str] = None, allow_statuses=()) -> requests.Response:
        """Send one request. Returns the response for 2xx or an allowed status, raises otherwise."""
        extra = {'Prefer': prefer} if prefer else None
        url = self.url(path)

        response = self.session.request(method, url, headers=self.auth.get_headers(extra),
                                        params=params, json=json_body, timeout=self.timeout)

        if response.status_code == 401:
            # Token may have been revoked or rotated - refresh once
            logger.info(f"401 from Graph for {method} {url}, refreshing token")
            self.auth.invalidate()
            self.auth.refresh_access_token()
            response = self.session.request(method, url, headers=self.auth.get_headers(extra),
                                            params=params, json=json_body, timeout=self.timeout)

        if response.status_code in allow_statuses or 200 <= response.status_code < 300:
            return response

        if response.status_code in (429, 503):
            retry_after = response.headers.get('Retry-After')
            raise GraphThrottledError(response.status_code, response.text,
                                      float(retry_after) if retry_after else None)

        raise GraphApiError(response.status_code, response.text)

    def get_json(self, path: str, params: Dict = None, prefer: Optional[str] = None) -> Dict:
        return self.request('GET', path, params=params, prefer=prefer).json()

    def iter_pages(self, path: str, params: Dict = None, prefer: Optional[str] = None,
                   max_pages: int = 50) -> Iterator[Dict]:
        """Yield every entity across @odata.nextLink pages"""
        next_url = path
        next_params = params
        page_counter = 0

        while next_url and page_counter < max_pages:
            data = self.get_json(next_url, params=next_params, prefer=prefer)
            for value in data.get('value', []):
                yield value

            page_counter += 1
            next_url = data.get('@odata.nextLink')
            # nextLink already carries the query
            next_params = None

        if next_url:
            logger.warning(f"Stopped paging {path} after {max_pages} pages")

    def get_all(self, path: str, params: Dict = None, prefer: Optional[str] = None,
                max_pages: int = 50) -> List[Dict]:
        return list(self.iter_pages(path, params=params, prefer=prefer, max_pages=max_pages))
