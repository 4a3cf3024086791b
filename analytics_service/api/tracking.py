from fastapi import APIRouter, Depends, status

from analytics_service.api.deps import get_services, get_tenant
from analytics_service.schemas.event import (
    BatchTrackResponse,
    EventBatchCreate,
    EventCreate,
    TrackResponse,
)
from analytics_service.services.container import Services
from analytics_service.services.tenants import ResolvedTenant

router = APIRouter(prefix="/track", tags=["tracking"])


@router.post("", response_model=TrackResponse, status_code=status.HTTP_201_CREATED)
async def track_event(
        event: EventCreate,
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Track a single event.

    - **type** (or **event**): event name, required
    - **properties**, **userId**, **sessionId**, **timestamp**: optional

    Succeeds once the event is durably stored; aggregations may lag briefly.
    """
    stored = await services.pipeline.ingest_one(tenant.id, event)
    return TrackResponse(event_id=stored.id, timestamp=stored.timestamp)


@router.post("/batch", response_model=BatchTrackResponse, status_code=status.HTTP_201_CREATED)
async def track_batch(
        batch: EventBatchCreate,
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Track a batch of events atomically.

    - **events**: 1 to 1000 events; either all are stored or none
    """
    stored = await services.pipeline.ingest_batch(tenant.id, batch.events)
    return BatchTrackResponse(event_ids=[event.id for event in stored], count=len(stored))
