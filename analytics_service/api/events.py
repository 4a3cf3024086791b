from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from analytics_service.api.deps import get_services, get_tenant
from analytics_service.core.config import settings
from analytics_service.schemas.analytics import SearchResponse
from analytics_service.schemas.event import EventListResponse, EventResponse
from analytics_service.services.aggregation_index import EventFilters
from analytics_service.services.container import Services
from analytics_service.services.tenants import ResolvedTenant
import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/events", tags=["events"])

PROPERTY_PREFIX = "prop."


@router.get("", response_model=EventListResponse)
async def list_events(
        event_type: str | None = Query(default=None),
        start_date: datetime | None = Query(default=None, description="Inclusive lower bound"),
        end_date: datetime | None = Query(default=None, description="Inclusive upper bound"),
        limit: int = Query(default=settings.default_query_limit, ge=1, le=settings.max_query_limit),
        offset: int = Query(default=0, ge=0),
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    List events straight from the durable store, newest first.
    """
    rows = await services.store.list_events(
        tenant.id,
        event_type=event_type,
        start=start_date,
        end=end_date,
        limit=limit,
        offset=offset
    )
    return EventListResponse(
        events=[EventResponse.model_validate(row) for row in rows],
        count=len(rows),
        offset=offset,
        limit=limit
    )


@router.get("/search", response_model=SearchResponse)
async def search_events(
        request: Request,
        event_type: str | None = Query(default=None),
        user_id: str | None = Query(default=None),
        start: datetime | None = Query(default=None, description="Inclusive lower bound"),
        end: datetime | None = Query(default=None, description="Inclusive upper bound"),
        limit: int = Query(default=settings.default_query_limit, ge=1, le=settings.max_query_limit),
        offset: int = Query(default=0, ge=0),
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Search indexed events. All filters are combined with AND.

    - **prop.<key>=<value>**: property equality, e.g. `prop.plan=pro`;
      nested keys use dots, e.g. `prop.cart.currency=EUR`
    """
    properties = {
        key[len(PROPERTY_PREFIX):]: value
        for key, value in request.query_params.items()
        if key.startswith(PROPERTY_PREFIX) and len(key) > len(PROPERTY_PREFIX)
    }
    filters = EventFilters(
        event_type=event_type,
        user_id=user_id,
        start=start,
        end=end,
        properties=properties
    )
    return await services.analytics.search_events(tenant.id, filters, limit, offset)


@router.get("/stream")
async def stream_events(
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Server-Sent Events stream of the tenant's newly ingested events.

    Emits `connected` immediately, `heartbeat` periodically and one `event`
    message per ingested event. No backlog is replayed.
    """
    connection = services.hub.connect(tenant.id)
    return StreamingResponse(
        services.hub.stream(connection),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )
