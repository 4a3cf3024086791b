from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query

from analytics_service.api.deps import get_services, get_tenant
from analytics_service.schemas.analytics import (
    AnalyticsResponse,
    DashboardConfigResponse,
    FunnelResponse,
    TenantInfo,
    UsageResponse,
)
from analytics_service.services.aggregation_index import INTERVALS
from analytics_service.services.container import Services
from analytics_service.services.tenants import ResolvedTenant

router = APIRouter(tags=["analytics"])

DEFAULT_DAYS = 7


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
        start: datetime | None = Query(default=None, description="Range start (default: 7 days ago)"),
        end: datetime | None = Query(default=None, description="Range end (default: now)"),
        interval: str = Query(default="day", description="minute, hour, day, week or month"),
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Aggregations over a time range.

    - **events_over_time**: counts per bucket, empty buckets included
    - **top_events**: top 20 event types by count
    - **unique_users**: distinct user ids in range
    """
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=DEFAULT_DAYS)
    return await services.analytics.get_analytics(tenant.id, start, end, interval)


@router.get("/analytics/usage", response_model=UsageResponse)
async def get_usage(
        days: int = Query(default=DEFAULT_DAYS, ge=1, le=365),
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Daily analytics for the last **days** days plus `growth_rate`, the percentage
    change between the first and second half of the period.
    """
    return await services.analytics.get_usage(tenant.id, days)


@router.get("/analytics/funnel", response_model=FunnelResponse)
async def get_funnel(
        steps: str = Query(..., description="Comma separated event types, in order"),
        window: str = Query(default="1d", description="Look-back window, e.g. 30m, 12h, 1d, 2w"),
        tenant: ResolvedTenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Per-step event counts and conversion relative to the first step.

    Each step is counted on its own within the window; a user does not need to
    have completed the previous step to be counted.
    """
    event_types = [step.strip() for step in steps.split(",") if step.strip()]
    funnel = await services.analytics.get_funnel(tenant.id, event_types, window)
    return {"funnel": funnel}


@router.get("/dashboard/config", response_model=DashboardConfigResponse)
async def get_dashboard_config(tenant: ResolvedTenant = Depends(get_tenant)):
    """Bootstrap data for the dashboard"""
    return DashboardConfigResponse(
        tenant=TenantInfo(id=tenant.id, name=tenant.name),
        stream_url="/events/stream",
        default_days=DEFAULT_DAYS,
        intervals=list(INTERVALS)
    )
