from pydantic import BaseModel
from typing import List
from uuid import UUID

from analytics_service.schemas.event import EventResponse


class SearchResponse(BaseModel):
    """Filtered event search over the aggregation index"""
    events: List[EventResponse]
    total: int
    count: int
    latency: float


class TimeBucket(BaseModel):
    """One bucket of the events-over-time series"""
    date: str
    count: int


class TopEvent(BaseModel):
    """Event type frequency"""
    event: str
    count: int


class AnalyticsResponse(BaseModel):
    """Aggregations over a time range"""
    total_events: int
    unique_users: int
    events_over_time: List[TimeBucket]
    top_events: List[TopEvent]


class UsageResponse(AnalyticsResponse):
    """Daily analytics plus a first-half/second-half growth heuristic"""
    growth_rate: float


class FunnelStep(BaseModel):
    step: int
    event: str
    count: int
    unique_users: int
    conversion_rate: float


class FunnelResponse(BaseModel):
    """Per-step independent counts (not a sequential funnel)"""
    funnel: List[FunnelStep]


class TenantInfo(BaseModel):
    id: UUID
    name: str


class DashboardConfigResponse(BaseModel):
    """Bootstrap data for the dashboard"""
    tenant: TenantInfo
    stream_url: str
    default_days: int
    intervals: List[str]
