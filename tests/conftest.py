"""
Shared fixtures for ProofSync tests.
"""

import keyring
import pytest

from proofsync.config import OAuthConfig
from proofsync.oauth import RefreshLock

from tests.unit.fakes import MemoryKeyring


@pytest.fixture
def memory_keyring():
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def oauth_config():
    return OAuthConfig(
        client_id="client-123.apps.googleusercontent.com",
        client_secret="shh",
        redirect_uri="http://127.0.0.1:8765/oauth/callback",
    )


@pytest.fixture
def refresh_lock():
    return RefreshLock()
