"""
Shared fixtures for API service tests.
"""

from typing import Dict, Optional

import pytest
from starlette.requests import Request

from service_api.app.adapters.supabase_client import SupabaseDataClient
from shared.tasks import TaskSupervisor
from shared.test_helpers import FakeSupabase, TestDataFactory


def make_request(
    path: str = "/api/profile",
    method: str = "GET",
    headers: Optional[Dict[str, str]] = None,
    query_string: str = "",
    client: str = "10.0.0.1",
    path_params: Optional[Dict[str, str]] = None,
) -> Request:
    """Build a bare Starlette request."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query_string.encode("latin-1"),
        "headers": [(name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in (headers or {}).items()],
        "client": (client, 51234),
        "path_params": path_params or {},
    }
    return Request(scope)


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def factory(db):
    factory = TestDataFactory(db)
    factory.organization()
    return factory


@pytest.fixture
def data_client(db):
    return SupabaseDataClient(db)


@pytest.fixture
def tasks():
    return TaskSupervisor()
