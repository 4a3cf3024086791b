"""DuckDB-backed aggregation index.

One document row per event. Documents are partitioned per tenant per day
through ``index_name`` (``{prefix}-events-{tenant}-{YYYY-MM-DD}``); every read
filters on ``tenant_id`` first. Timestamps are stored as naive UTC.

DuckDB calls are blocking, so each operation runs in a worker thread on its own
cursor.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable
from uuid import UUID

import duckdb
import numpy as np
import pandas as pd
import structlog

from analytics_service.core.errors import IndexUnavailable
from analytics_service.services.event_store import StoredEvent

logger = structlog.get_logger()

EVENTS_TABLE = "events"

COLUMNS = [
    "event_id",
    "index_name",
    "tenant_id",
    "event_type",
    "user_id",
    "session_id",
    "occurred_at",
    "properties",
    "created_at",
]

INTERVALS = ("minute", "hour", "day", "week", "month")


@dataclass
class EventFilters:
    """Conjunctive search filters; ``None`` means unfiltered"""
    event_type: str | None = None
    user_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    properties: dict[str, Any] = field(default_factory=dict)


def to_index_time(value: datetime) -> datetime:
    """Naive UTC, the representation stored in the index"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _property_value(value: Any) -> str:
    # json_extract_string renders booleans as true/false
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class AggregationIndex:
    """Secondary, eventually consistent store for filtering and aggregations"""

    def __init__(self, conn: duckdb.DuckDBPyConnection, prefix: str = "analytics"):
        self.conn = conn
        self.prefix = prefix

    def initialize(self) -> None:
        """Create the documents table if missing"""
        self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
                event_id VARCHAR NOT NULL,
                index_name VARCHAR NOT NULL,
                tenant_id VARCHAR NOT NULL,
                event_type VARCHAR NOT NULL,
                user_id VARCHAR,
                session_id VARCHAR,
                occurred_at TIMESTAMP NOT NULL,
                properties VARCHAR,
                created_at TIMESTAMP
            )
        """)
        logger.info("aggregation_index_initialized", prefix=self.prefix)

    def close(self) -> None:
        self.conn.close()

    def index_name(self, tenant_id: UUID | str, day: date) -> str:
        return f"{self.prefix}-events-{tenant_id}-{day.isoformat()}"

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        def call():
            cursor = self.conn.cursor()
            try:
                return fn(cursor, *args)
            finally:
                cursor.close()

        try:
            return await asyncio.to_thread(call)
        except Exception as e:
            logger.error("aggregation_index_error", operation=operation, error=str(e))
            raise IndexUnavailable(f"Aggregation index {operation} failed") from e

    # Writes

    def _to_frame(self, tenant_id: UUID, events: list[StoredEvent]) -> pd.DataFrame:
        records = []
        occurred, created = [], []
        for event in events:
            occurred_at = to_index_time(event.timestamp)
            occurred.append(occurred_at)
            created.append(to_index_time(event.created_at))
            records.append({
                "event_id": str(event.id),
                "index_name": self.index_name(tenant_id, occurred_at.date()),
                "tenant_id": str(tenant_id),
                "event_type": event.event_type,
                "user_id": event.user_id,
                "session_id": event.session_id,
                "properties": json.dumps(event.properties, default=str),
            })

        df = pd.DataFrame(records)
        # Microsecond resolution: caller timestamps may fall outside the nanosecond range (1677-2262)
        df["occurred_at"] = np.array(occurred, dtype="datetime64[us]")
        df["created_at"] = np.array(created, dtype="datetime64[us]")
        return df[COLUMNS]

    async def index_events(self, tenant_id: UUID, events: list[StoredEvent]) -> int:
        """Bulk index committed events; returns the number of documents written"""
        if not events:
            return 0

        def append(cursor):
            df = self._to_frame(tenant_id, events)
            cursor.append(EVENTS_TABLE, df)
            return len(df)

        written = await self._run("bulk_index", append)
        logger.debug("events_indexed", tenant_id=str(tenant_id), count=written)
        return written

    # Reads

    def _where(
            self,
            tenant_id: UUID,
            filters: EventFilters | None = None
    ) -> tuple[str, list[Any]]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [str(tenant_id)]

        if filters is None:
            return " AND ".join(clauses), params

        if filters.event_type:
            clauses.append("event_type = ?")
            params.append(filters.event_type)
        if filters.user_id:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.start:
            clauses.append("occurred_at >= ?")
            params.append(to_index_time(filters.start))
        if filters.end:
            clauses.append("occurred_at <= ?")
            params.append(to_index_time(filters.end))
        for key, value in filters.properties.items():
            clauses.append("json_extract_string(properties, ?) = ?")
            params.extend([f"$.{key}", _property_value(value)])

        return " AND ".join(clauses), params

    async def search(
            self,
            tenant_id: UUID,
            filters: EventFilters,
            limit: int = 100,
            offset: int = 0
    ) -> tuple[list[dict[str, Any]], int]:
        """Matching documents, newest first, plus the total match count"""
        where, params = self._where(tenant_id, filters)

        def query(cursor):
            total = cursor.execute(
                f"SELECT COUNT(*) FROM {EVENTS_TABLE} WHERE {where}", params
            ).fetchone()[0]
            rows = cursor.execute(
                f"""
                SELECT event_id, event_type, user_id, session_id, occurred_at, properties
                FROM {EVENTS_TABLE}
                WHERE {where}
                ORDER BY occurred_at DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset]
            ).fetchall()
            return rows, total

        rows, total = await self._run("search", query)
        events = [
            {
                "id": row[0],
                "event_type": row[1],
                "user_id": row[2],
                "session_id": row[3],
                "timestamp": row[4].replace(tzinfo=timezone.utc),
                "properties": json.loads(row[5]) if row[5] else {},
            }
            for row in rows
        ]
        return events, total

    async def totals(self, tenant_id: UUID, filters: EventFilters) -> tuple[int, int]:
        """(event count, distinct user count)"""
        where, params = self._where(tenant_id, filters)

        def query(cursor):
            return cursor.execute(
                f"SELECT COUNT(*), COUNT(DISTINCT user_id) FROM {EVENTS_TABLE} WHERE {where}",
                params
            ).fetchone()

        total, unique_users = await self._run("totals", query)
        return int(total), int(unique_users)

    async def histogram(
            self,
            tenant_id: UUID,
            filters: EventFilters,
            interval: str
    ) -> list[tuple[datetime, int]]:
        """Non-empty buckets only; callers fill gaps"""
        if interval not in INTERVALS:
            raise ValueError(f"Unsupported interval: {interval}")
        where, params = self._where(tenant_id, filters)

        def query(cursor):
            return cursor.execute(
                f"""
                SELECT CAST(date_trunc('{interval}', occurred_at) AS TIMESTAMP) AS bucket,
                       COUNT(*) AS count
                FROM {EVENTS_TABLE}
                WHERE {where}
                GROUP BY bucket
                ORDER BY bucket
                """,
                params
            ).fetchall()

        rows = await self._run("histogram", query)
        return [(row[0], int(row[1])) for row in rows]

    async def top_event_types(
            self,
            tenant_id: UUID,
            filters: EventFilters,
            size: int = 20
    ) -> list[tuple[str, int]]:
        where, params = self._where(tenant_id, filters)

        def query(cursor):
            return cursor.execute(
                f"""
                SELECT event_type, COUNT(*) AS count
                FROM {EVENTS_TABLE}
                WHERE {where}
                GROUP BY event_type
                ORDER BY count DESC, event_type
                LIMIT ?
                """,
                [*params, size]
            ).fetchall()

        rows = await self._run("top_event_types", query)
        return [(row[0], int(row[1])) for row in rows]

    async def health(self) -> dict[str, int]:
        def query(cursor):
            return cursor.execute(
                f"SELECT COUNT(*), COUNT(DISTINCT index_name) FROM {EVENTS_TABLE}"
            ).fetchone()

        documents, partitions = await self._run("health", query)
        return {"documents": int(documents), "partitions": int(partitions)}
