"""Shared fixtures: SQLite event store and DuckDB index under tmp_path."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from analytics_service.core.config import Settings
from analytics_service.core.database import init_storage
from analytics_service.core.errors import IndexUnavailable
from analytics_service.main import create_app
from analytics_service.services.container import build_services
from analytics_service.services.event_store import StoredEvent
from analytics_service.services.tenants import create_tenant


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'events.db'}",
        duckdb_path=str(tmp_path / "index.duckdb"),
        redis_url=None,
        rate_limit_enabled=True,
        rate_limit_requests=1000,
    )


@pytest_asyncio.fixture
async def services(test_settings):
    services = build_services(test_settings)
    await init_storage(services.engine)
    await services.rate_limiter.connect()
    yield services
    await services.close()


@pytest_asyncio.fixture
async def tenant_a(services):
    tenant, _ = await create_tenant(services.session_factory, "Test Company", "test-api-key-123")
    return tenant


@pytest_asyncio.fixture
async def tenant_b(services):
    tenant, _ = await create_tenant(services.session_factory, "Demo Corp", "demo-api-key-456")
    return tenant


@pytest.fixture
def headers_a():
    return {"X-API-Key": "test-api-key-123"}


@pytest.fixture
def headers_b():
    return {"X-API-Key": "demo-api-key-456"}


@pytest_asyncio.fixture
async def client(services, tenant_a, tenant_b):
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


class FailingIndex:
    """Aggregation index stand-in whose every call fails"""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise IndexUnavailable("Aggregation index unreachable")

    index_events = _fail
    search = _fail
    totals = _fail
    histogram = _fail
    top_event_types = _fail
    health = _fail

    def close(self):
        pass


def build_event(
        tenant_id: UUID,
        event_type: str,
        timestamp: datetime,
        user_id: str | None = None,
        **properties
) -> StoredEvent:
    return StoredEvent(
        id=uuid4(),
        tenant_id=tenant_id,
        event_type=event_type,
        timestamp=timestamp,
        created_at=datetime.now(timezone.utc),
        user_id=user_id,
        properties=properties,
    )


@pytest.fixture
def failing_index():
    return FailingIndex()


@pytest.fixture
def make_event():
    return build_event
