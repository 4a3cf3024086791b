from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_service.core.errors import StoreUnavailable
from analytics_service.models.event import Event
from analytics_service.schemas.event import EventCreate
import structlog

logger = structlog.get_logger()

_timestamp_adapter = TypeAdapter(datetime)


@dataclass(frozen=True)
class StoredEvent:
    """A committed event row, as mirrored to the index and broadcast"""

    id: UUID
    tenant_id: UUID
    event_type: str
    timestamp: datetime
    created_at: datetime
    user_id: str | None = None
    session_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        """JSON-ready payload pushed to stream subscribers"""
        return {
            "id": str(self.id),
            "event_type": self.event_type,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "properties": self.properties,
            "timestamp": self.timestamp.isoformat(),
        }


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timestamp(value: datetime | str | None, received_at: datetime) -> datetime:
    """Caller-supplied timestamp wins when parseable, else the ingestion clock"""
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str) and value.strip():
        try:
            return to_utc(_timestamp_adapter.validate_python(value.strip()))
        except ValidationError:
            logger.debug("unparseable_timestamp_ignored", value=value)
    return received_at


class EventStore:
    """Append-only relational store of events; the source of truth"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert_batch(
            self,
            tenant_id: UUID,
            events: list[EventCreate],
            received_at: datetime | None = None
    ) -> list[StoredEvent]:
        """
        Insert all events in one transaction.

        Either every row commits or none does.

        Raises:
            StoreUnavailable: the transaction failed and was rolled back
        """
        received_at = received_at or datetime.now(timezone.utc)
        rows = []

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for event in events:
                        row = Event(
                            id=uuid4(),
                            tenant_id=tenant_id,
                            event_type=event.type,
                            properties=event.properties,
                            user_id=event.user_id,
                            session_id=event.session_id,
                            timestamp=resolve_timestamp(event.timestamp, received_at),
                            created_at=received_at
                        )
                        session.add(row)
                        rows.append(row)

                    await session.flush()
        except Exception as e:
            logger.error(
                "event_store_write_failed",
                tenant_id=str(tenant_id),
                batch_size=len(events),
                error=str(e)
            )
            raise StoreUnavailable("Failed to track events") from e

        return [
            StoredEvent(
                id=row.id,
                tenant_id=tenant_id,
                event_type=row.event_type,
                timestamp=row.timestamp,
                created_at=row.created_at,
                user_id=row.user_id,
                session_id=row.session_id,
                properties=row.properties
            )
            for row in rows
        ]

    async def list_events(
            self,
            tenant_id: UUID,
            event_type: str | None = None,
            start: datetime | None = None,
            end: datetime | None = None,
            limit: int = 100,
            offset: int = 0
    ) -> list[Event]:
        """Newest-first listing straight from the durable store"""
        stmt = select(Event).where(Event.tenant_id == tenant_id)

        if event_type:
            stmt = stmt.where(Event.event_type == event_type)
        if start:
            stmt = stmt.where(Event.timestamp >= to_utc(start))
        if end:
            stmt = stmt.where(Event.timestamp <= to_utc(end))

        stmt = stmt.order_by(Event.timestamp.desc()).limit(limit).offset(offset)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except Exception as e:
            logger.error("event_store_query_failed", tenant_id=str(tenant_id), error=str(e))
            raise StoreUnavailable("Failed to query events") from e
