"""
Shared fixtures: settings that never read the real environment, and an
Alloy transport backed by ``httpx.MockTransport``.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from config.settings import load_settings
from connectors.transport import CredentialTransport

BASE_URL = "https://alloy.test/api"

_ENV_VARS = (
    "ALLOY_API_KEY",
    "ALLOY_USER_ID",
    "ALLOY_BASE_URL",
    "ALLOY_CONNECTION_ID",
    "CONNECTION_ID",
    "API_KEY",
    "USER_ID",
    "BASE_URL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture
def settings(clean_env):
    return load_settings(
        api_key="sk-test-0123456789",
        user_id="user-1",
        base_url=BASE_URL,
        _env_file=None,
    )


@pytest.fixture
def make_transport(settings):
    """Factory: ``make_transport(handler)`` → CredentialTransport over a mock client."""

    def _make(handler, s=None):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CredentialTransport(s or settings, client=client)

    return _make


@pytest.fixture
def no_sleep():
    return AsyncMock(return_value=None)
