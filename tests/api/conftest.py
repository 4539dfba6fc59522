"""Pytest fixtures for API tests.

``client`` and ``bearer`` come from the root conftest; this module adds
rate limiter isolation and a client whose app requires the shared key.
"""

import pytest
from fastapi.testclient import TestClient

from agentrelay.api.middleware.auth import reset_rate_limiter
from agentrelay.config import AuthConfig, RelayConfig


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Auth failures are tracked per process; isolate each test."""
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture
def keyed_client(app_factory) -> TestClient:
    """Client for an app that requires X-API-Key on human routes."""
    config = RelayConfig(auth=AuthConfig(api_key="shared-secret", failure_max=3))
    return TestClient(app_factory(config))
