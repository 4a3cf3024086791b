# DB connections

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from analytics_service.core.config import Settings
from analytics_service.models.event import Base
import duckdb


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Async engine for the durable event store"""
    options = {"echo": settings.debug}
    if settings.database_url.startswith("postgresql"):
        options.update(pool_size=20, max_overflow=0)
    return create_async_engine(settings.database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_storage(engine: AsyncEngine) -> None:
    """Create tenants/events tables from the ORM metadata (tests, local dev)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_duckdb_connection(path: str) -> duckdb.DuckDBPyConnection:
    """Get DuckDB connection backing the aggregation index"""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(path)
