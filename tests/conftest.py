"""
Pytest configuration and fixtures for the test suite.
"""
import json
import os
import sys

import pytest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from relay_library.credential_store import CredentialStore
from relay_library.token_manager import TokenManager
from tests.fixtures.credentials import make_credentials


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )


@pytest.fixture
def credentials_path(tmp_path):
    """Path of a credential file inside a temporary directory (not created)."""
    return tmp_path / ".qwen" / "oauth_creds.json"


@pytest.fixture
def write_credentials(credentials_path):
    """Write a credential file; keyword arguments are passed to make_credentials."""

    def _write(**kwargs):
        data = make_credentials(**kwargs)
        credentials_path.parent.mkdir(parents=True, exist_ok=True)
        credentials_path.write_text(json.dumps(data), encoding="utf-8")
        return data

    return _write


@pytest.fixture
def store(credentials_path):
    return CredentialStore(credentials_path)


@pytest.fixture
def token_manager(store):
    return TokenManager(store)


@pytest.fixture
def sample_messages():
    """Sample messages for chat completion tests."""
    return [
        {"role": "system", "content": "You are a helpful coding assistant."},
        {"role": "user", "content": "Write hello world in Python."},
    ]
