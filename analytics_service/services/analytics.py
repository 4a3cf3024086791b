import asyncio
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List
from uuid import UUID

import pandas as pd
import structlog

from analytics_service.core.errors import AggregationUnavailable, IndexUnavailable, InvalidQuery
from analytics_service.services.aggregation_index import (
    INTERVALS,
    AggregationIndex,
    EventFilters,
    to_index_time,
)

logger = structlog.get_logger()

# pandas frequencies matching DuckDB's date_trunc buckets (weeks start on Monday)
BUCKET_FREQ = {
    "minute": "1min",
    "hour": "60min",
    "day": "1D",
    "week": "7D",
    "month": "MS",
}

WINDOW_PATTERN = re.compile(r"^(\d+)([smhdw])$")
WINDOW_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}

# Dotted path of plain segments; anything else would be JSON path syntax
PROPERTY_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*")


def parse_window(window: str) -> timedelta:
    """'30m', '12h', '1d', '2w' -> timedelta"""
    match = WINDOW_PATTERN.match(window.strip()) if window else None
    if not match or int(match.group(1)) == 0:
        raise InvalidQuery(f"Invalid time window: {window!r}")
    return timedelta(**{WINDOW_UNITS[match.group(2)]: int(match.group(1))})


def bucket_start(ts: pd.Timestamp, interval: str) -> pd.Timestamp:
    if interval == "minute":
        return ts.floor("1min")
    if interval == "hour":
        return ts.floor("60min")
    day = ts.normalize()
    if interval == "day":
        return day
    if interval == "week":
        return day - pd.Timedelta(days=day.weekday())
    return day.replace(day=1)


def bucket_count(start: datetime, end: datetime, interval: str) -> int:
    first = bucket_start(pd.Timestamp(start), interval)
    last = bucket_start(pd.Timestamp(end), interval)
    if interval == "month":
        return (last.year - first.year) * 12 + last.month - first.month + 1
    return int((last - first) / pd.Timedelta(BUCKET_FREQ[interval])) + 1


def fill_series(
        buckets: List[tuple[datetime, int]],
        start: datetime,
        end: datetime,
        interval: str
) -> List[Dict[str, Any]]:
    """Bucket-aligned series over [start, end] with empty buckets as zero"""
    full_range = pd.date_range(
        bucket_start(pd.Timestamp(start), interval),
        bucket_start(pd.Timestamp(end), interval),
        freq=BUCKET_FREQ[interval]
    )
    counts = pd.Series(
        [count for _, count in buckets],
        index=pd.DatetimeIndex([bucket for bucket, _ in buckets]),
        dtype="int64"
    )
    filled = counts.reindex(full_range, fill_value=0)

    return [
        {"date": bucket.tz_localize("UTC").isoformat(), "count": int(count)}
        for bucket, count in filled.items()
    ]


def growth_rate(counts: List[int]) -> float:
    """
    Percentage change from the first half of a series to the second half.

    A rough heuristic for the dashboard, not a trend model. 0 when the first
    half is empty.
    """
    middle = len(counts) // 2
    first_half = sum(counts[:middle])
    second_half = sum(counts[middle:])
    if first_half == 0:
        return 0.0
    return round((second_half - first_half) / first_half * 100, 2)


def conversion_rates(counts: List[int]) -> List[float]:
    """Each step relative to the first; the first step is always 100"""
    rates = []
    for position, count in enumerate(counts):
        if position == 0:
            rates.append(100.0)
        elif counts[0] > 0:
            rates.append(round(count / counts[0] * 100, 2))
        else:
            rates.append(0.0)
    return rates


class AnalyticsService:
    """Read-only, tenant-scoped queries answered by the aggregation index"""

    def __init__(
            self,
            index: AggregationIndex,
            top_events_size: int = 20,
            max_buckets: int = 5000,
            clock: Callable[[], datetime] | None = None
    ):
        self.index = index
        self.top_events_size = top_events_size
        self.max_buckets = max_buckets
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def search_events(
            self,
            tenant_id: UUID,
            filters: EventFilters,
            limit: int = 100,
            offset: int = 0
    ) -> Dict[str, Any]:
        """Filtered events, newest first"""
        for key in filters.properties:
            if not PROPERTY_KEY_PATTERN.fullmatch(key):
                raise InvalidQuery(f"Invalid property filter: {key!r}")

        started = time.perf_counter()
        try:
            events, total = await self.index.search(tenant_id, filters, limit, offset)
        except IndexUnavailable as e:
            raise AggregationUnavailable("Failed to search events") from e

        latency = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "events_search_executed",
            tenant_id=str(tenant_id),
            total=total,
            latency_ms=latency
        )
        return {"events": events, "total": total, "count": len(events), "latency": latency}

    async def get_analytics(
            self,
            tenant_id: UUID,
            start: datetime,
            end: datetime,
            interval: str = "day"
    ) -> Dict[str, Any]:
        """Totals, unique users, zero-filled time series and top event types"""
        if interval not in INTERVALS:
            raise InvalidQuery(f"Interval must be one of: {', '.join(INTERVALS)}")

        start, end = to_index_time(start), to_index_time(end)
        if start > end:
            raise InvalidQuery("'start' must be before or equal to 'end'")
        if bucket_count(start, end, interval) > self.max_buckets:
            raise InvalidQuery(f"Range produces more than {self.max_buckets} '{interval}' buckets")

        filters = EventFilters(start=start, end=end)
        try:
            (total, unique_users), buckets, top = await asyncio.gather(
                self.index.totals(tenant_id, filters),
                self.index.histogram(tenant_id, filters, interval),
                self.index.top_event_types(tenant_id, filters, self.top_events_size),
            )
        except IndexUnavailable as e:
            raise AggregationUnavailable("Failed to fetch analytics") from e

        logger.info(
            "analytics_query_executed",
            tenant_id=str(tenant_id),
            start=start.isoformat(),
            end=end.isoformat(),
            interval=interval
        )

        return {
            "total_events": total,
            "unique_users": unique_users,
            "events_over_time": fill_series(buckets, start, end, interval),
            "top_events": [{"event": event, "count": count} for event, count in top],
        }

    async def get_usage(self, tenant_id: UUID, days: int = 7) -> Dict[str, Any]:
        """Daily analytics over the last ``days`` days (today included) plus growth rate"""
        if days < 1:
            raise InvalidQuery("'days' must be at least 1")

        end = self.clock()
        start = to_index_time(end).replace(hour=0, minute=0, second=0, microsecond=0)
        start -= timedelta(days=days - 1)

        analytics = await self.get_analytics(tenant_id, start, end, "day")
        analytics["growth_rate"] = growth_rate([b["count"] for b in analytics["events_over_time"]])
        return analytics

    async def get_funnel(
            self,
            tenant_id: UUID,
            steps: List[str],
            window: str = "1d"
    ) -> List[Dict[str, Any]]:
        """
        Count each step independently within the window.

        Known limitation: steps are not conditioned on users completing the
        previous step, so this is a per-step count report rather than a
        sequential conversion funnel.
        """
        if not steps:
            raise InvalidQuery("At least one funnel step is required")

        end = self.clock()
        start = end - parse_window(window)

        results = []
        try:
            for event_type in steps:
                count, unique_users = await self.index.totals(
                    tenant_id,
                    EventFilters(event_type=event_type, start=start, end=end)
                )
                results.append({"event": event_type, "count": count, "unique_users": unique_users})
        except IndexUnavailable as e:
            raise AggregationUnavailable("Failed to compute funnel") from e

        rates = conversion_rates([step["count"] for step in results])
        return [
            {"step": position + 1, **step, "conversion_rate": rate}
            for position, (step, rate) in enumerate(zip(results, rates))
        ]
