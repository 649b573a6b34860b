"""
Graph auth tests - app-only tokens and recovery from a rejected token
"""

import pytest
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import msal

from conftest import FakeResponse, FakeSession
from auth import microsoft_auth
from auth.microsoft_auth import AuthenticationError, MicrosoftAuth
from cal_ops.graph_client import GraphClient


class FakeTokenCache:
    """Access tokens only, matched on their secret like msal.TokenCache"""
    CredentialType = msal.TokenCache.CredentialType

    def __init__(self):
        self.access_tokens = []

    def search(self, credential_type, target=None, query=None):
        for entry in self.access_tokens:
            if all(entry.get(k) == v for k, v in (query or {}).items()):
                yield entry

    def remove_at(self, entry):
        self.access_tokens.remove(entry)


class FakeConfidentialClient:
    """Serves a cached token first, as acquire_token_for_client does since msal 1.23"""

    def __init__(self, client_id, authority=None, client_credential=None):
        self.token_cache = FakeTokenCache()
        self.issued = 0

    def acquire_token_for_client(self, scopes):
        for entry in self.token_cache.access_tokens:
            return {'access_token': entry['secret'], 'expires_in': 3599, 'token_source': 'cache'}

        self.issued += 1
        token = f'token-{self.issued}'
        self.token_cache.access_tokens.append({'credential_type': 'AccessToken', 'secret': token})
        return {'access_token': token, 'expires_in': 3599, 'token_source': 'identity_provider'}


@pytest.fixture
def graph_auth(monkeypatch):
    monkeypatch.setattr(microsoft_auth.msal, 'ConfidentialClientApplication', FakeConfidentialClient)
    auth = MicrosoftAuth('tenant', 'client', 'secret', scopes=['https://graph.microsoft.com/.default'])
    auth.initialize()
    return auth


class TestMicrosoftAuth:

    @pytest.mark.auth
    def test_initialize_fetches_first_token(self, graph_auth):
        assert graph_auth.is_authenticated()
        assert graph_auth.get_headers()['Authorization'] == 'Bearer token-1'

    @pytest.mark.auth
    def test_invalidate_evicts_token_from_msal_cache(self, graph_auth):
        graph_auth.invalidate()
        graph_auth.refresh_access_token()

        assert graph_auth.get_headers()['Authorization'] == 'Bearer token-2', \
            "A rejected token must not come back from the MSAL cache"
        assert graph_auth._app.issued == 2

    @pytest.mark.auth
    def test_401_retries_with_a_new_token(self, graph_auth):
        session = FakeSession([FakeResponse(401), FakeResponse(200, {'value': []})])
        client = GraphClient(graph_auth, base_url='https://graph.test/v1.0', max_retries=0, session=session)

        client.get_json('users/a@x.com/events')

        first, retried = session.calls
        assert first['headers']['Authorization'] == 'Bearer token-1'
        assert retried['headers']['Authorization'] == 'Bearer token-2'

    @pytest.mark.auth
    def test_failed_acquisition_raises(self, graph_auth):
        graph_auth._app.acquire_token_for_client = lambda scopes: {
            'error': 'invalid_client', 'error_description': 'AADSTS7000215: Invalid client secret',
        }
        graph_auth.invalidate()

        with pytest.raises(AuthenticationError):
            graph_auth.refresh_access_token()

    @pytest.mark.auth
    def test_uninitialized_refresh_refuses(self):
        with pytest.raises(AuthenticationError):
            MicrosoftAuth('tenant', 'client', 'secret').refresh_access_token()
