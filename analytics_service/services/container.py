from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from analytics_service.core.config import Settings
from analytics_service.core.database import (
    create_engine_from_settings,
    create_session_factory,
    get_duckdb_connection,
)
from analytics_service.middleware.rate_limit import RateLimiter
from analytics_service.services.aggregation_index import AggregationIndex
from analytics_service.services.analytics import AnalyticsService
from analytics_service.services.event_store import EventStore
from analytics_service.services.fanout import FanoutHub
from analytics_service.services.ingestion import IngestionPipeline
from analytics_service.services.tenants import TenantResolver
import structlog

logger = structlog.get_logger()


@dataclass
class Services:
    """Long-lived collaborators shared by every request"""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    tenants: TenantResolver
    store: EventStore
    index: AggregationIndex
    hub: FanoutHub
    pipeline: IngestionPipeline
    analytics: AnalyticsService
    rate_limiter: RateLimiter | None = None

    async def start(self) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.connect()
        await self.hub.start()
        logger.info("services_started")

    async def close(self) -> None:
        await self.hub.stop()
        if self.rate_limiter is not None:
            await self.rate_limiter.close()
        self.index.close()
        await self.engine.dispose()
        logger.info("services_closed")


def build_services(settings: Settings, engine: AsyncEngine | None = None) -> Services:
    """Wire the service graph; the hub is created here once per process"""
    engine = engine or create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    index = AggregationIndex(get_duckdb_connection(settings.duckdb_path), prefix=settings.index_prefix)
    index.initialize()

    store = EventStore(session_factory)
    hub = FanoutHub(
        heartbeat_interval=settings.stream_heartbeat_interval,
        queue_size=settings.stream_queue_size
    )

    rate_limiter = None
    if settings.rate_limit_enabled:
        rate_limiter = RateLimiter(
            rate=settings.rate_limit_requests,
            period=settings.rate_limit_period,
            redis_url=settings.redis_url
        )

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        tenants=TenantResolver(session_factory),
        store=store,
        index=index,
        hub=hub,
        pipeline=IngestionPipeline(store, index, hub),
        analytics=AnalyticsService(
            index,
            top_events_size=settings.top_events_size,
            max_buckets=settings.max_histogram_buckets
        ),
        rate_limiter=rate_limiter,
    )
