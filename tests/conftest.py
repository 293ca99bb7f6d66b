"""
Test Configuration
==================

Pytest fixtures for Mind Measure tests.

Every test gets a fresh in-memory local backend installed as the default
BackendService instance.
"""

import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment
os.environ["ENVIRONMENT"] = "testing"
os.environ["BACKEND_PROVIDER"] = "local"
os.environ["SECURITY_MONITORING_ENABLED"] = "false"
os.environ.pop("SECURITY_ALERT_WEBHOOK_URL", None)

from shared.auth import create_access_token  # noqa: E402
from shared.backend import BackendService, BackendServiceFactory, RealtimeService  # noqa: E402
from shared.backend.database_auth import DatabaseAuthService  # noqa: E402
from shared.backend.local import (  # noqa: E402
    LocalDatabaseService,
    LocalFunctionService,
    LocalStorageService,
)
from shared.config import BackendProvider  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture
def sent_codes() -> list[tuple[str, str, str]]:
    """(email, purpose, code) for every code the auth service sends."""
    return []


@pytest_asyncio.fixture
async def backend(sent_codes: list[tuple[str, str, str]]) -> AsyncGenerator[BackendService, None]:
    """Fresh local backend registered as the default instance."""
    realtime = RealtimeService()
    database = LocalDatabaseService(realtime=realtime)
    service = BackendService(
        provider=BackendProvider.LOCAL,
        database=database,
        auth=DatabaseAuthService(
            database,
            code_sender=lambda email, purpose, code: sent_codes.append((email, purpose, code)),
        ),
        storage=LocalStorageService(),
        realtime=realtime,
        functions=LocalFunctionService(),
    )
    BackendServiceFactory.set_instance(service)
    yield service
    await BackendServiceFactory.clear_instances()


@pytest.fixture
def database(backend: BackendService) -> LocalDatabaseService:
    assert isinstance(backend.database, LocalDatabaseService)
    return backend.database


@pytest.fixture
def make_headers() -> Callable[..., dict[str, str]]:
    """Build bearer headers for a user id and roles."""

    def _make(user_id: str = "test-user-id", roles: list[str] | None = None, **claims: Any) -> dict[str, str]:
        token = create_access_token({"sub": user_id, "roles": roles or ["student"], **claims})
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def auth_headers(make_headers: Callable[..., dict[str, str]]) -> dict[str, str]:
    """Headers for an ordinary student."""
    return make_headers("test-user-id", ["student"], email="student@uni.ac.uk")


@pytest.fixture
def admin_headers(make_headers: Callable[..., dict[str, str]]) -> dict[str, str]:
    """Headers for an administrator."""
    return make_headers("admin-user-id", ["admin"], email="admin@mindmeasure.co.uk")


@pytest_asyncio.fixture
async def app_api_client(backend: BackendService) -> AsyncGenerator[AsyncClient, None]:
    """Create test client for the App API."""
    from services.app_api.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


@pytest_asyncio.fixture
async def admin_client(backend: BackendService) -> AsyncGenerator[AsyncClient, None]:
    """Create test client for the Admin service."""
    from services.admin.main import app

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


@pytest.fixture
def baseline_transcript() -> str:
    """A complete baseline conversation (PHQ-2 1, GAD-2 5, mood 7)."""
    return "\n".join(
        [
            "agent: Are you ready to begin?",
            "user: Yes",
            "agent: Little interest or pleasure in doing things?",
            "user: Several days",
            "agent: Feeling down, depressed or hopeless?",
            "user: Not at all",
            "agent: Feeling nervous, anxious or on edge?",
            "user: More than half the days",
            "agent: Not being able to stop or control worrying?",
            "user: Nearly every day",
            "agent: How would you rate your mood from one to ten?",
            "user: I'd say 7",
        ]
    )
