"""
Integration test fixtures
"""

import pytest
from fastapi.testclient import TestClient

from backoffice.api.dependencies import get_db, get_platform_manager
from backoffice.api.main import app


@pytest.fixture
def client(db_session, manager):
    """API client bound to the test session and the mocked-HTTP platform manager."""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_platform_manager] = lambda: manager

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
