from datetime import datetime, timezone
from uuid import UUID

from analytics_service.core.errors import InvalidEvent
from analytics_service.schemas.event import EventCreate
from analytics_service.services.aggregation_index import AggregationIndex
from analytics_service.services.event_store import EventStore, StoredEvent
from analytics_service.services.fanout import FanoutHub
import structlog

logger = structlog.get_logger()


class IngestionPipeline:
    """
    Durable-store-strong, index-eventually-consistent ingestion.

    Per call: the event store transaction commits first, then the committed rows
    are mirrored to the aggregation index, then broadcast to live subscribers.
    A failed mirror leaves the events durably stored but missing from
    aggregations until reconciled; it is logged and counted, never raised.
    """

    def __init__(self, store: EventStore, index: AggregationIndex, hub: FanoutHub):
        self.store = store
        self.index = index
        self.hub = hub
        self.mirror_failures = 0

    async def ingest_one(self, tenant_id: UUID, event: EventCreate) -> StoredEvent:
        stored = await self._ingest(tenant_id, [event])
        return stored[0]

    async def ingest_batch(self, tenant_id: UUID, events: list[EventCreate]) -> list[StoredEvent]:
        if not events:
            raise InvalidEvent("Events array required")
        return await self._ingest(tenant_id, events)

    async def _ingest(self, tenant_id: UUID, events: list[EventCreate]) -> list[StoredEvent]:
        # Validate the whole batch before touching either store
        for position, event in enumerate(events):
            if not event.type or not event.type.strip():
                raise InvalidEvent(f"Event name required (event {position})")

        received_at = datetime.now(timezone.utc)
        stored = await self.store.insert_batch(tenant_id, events, received_at)

        await self._mirror(tenant_id, stored)
        self._broadcast(tenant_id, stored)

        logger.info("events_ingested", tenant_id=str(tenant_id), count=len(stored))
        return stored

    async def _mirror(self, tenant_id: UUID, stored: list[StoredEvent]) -> None:
        try:
            await self.index.index_events(tenant_id, stored)
        except Exception as e:
            self.mirror_failures += 1
            logger.error(
                "index_mirror_failed",
                tenant_id=str(tenant_id),
                event_ids=[str(event.id) for event in stored],
                mirror_failures=self.mirror_failures,
                error=str(e)
            )

    def _broadcast(self, tenant_id: UUID, stored: list[StoredEvent]) -> None:
        for event in stored:
            try:
                self.hub.broadcast(tenant_id, event.to_message())
            except Exception as e:
                logger.error(
                    "broadcast_failed",
                    tenant_id=str(tenant_id),
                    event_id=str(event.id),
                    error=str(e)
                )
