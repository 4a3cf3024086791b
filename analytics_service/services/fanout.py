"""Process-local fan-out of newly ingested events to open stream connections."""

import asyncio
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator
from uuid import UUID, uuid4

import structlog

from analytics_service.core.errors import DeliveryFailure

logger = structlog.get_logger()


class MessageType(str, Enum):
    """Stream message kinds"""

    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    EVENT = "event"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_sse(message: dict[str, Any]) -> str:
    """One Server-Sent Events frame"""
    return f"data: {json.dumps(message, default=str)}\n\n"


@dataclass
class StreamConnection:
    """A subscriber's delivery channel, scoped to one tenant"""

    tenant_id: UUID
    queue_size: int = 1000
    id: str = field(default_factory=lambda: str(uuid4()))
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_count: int = 0
    closed: bool = False
    queue: asyncio.Queue = field(init=False)

    def __post_init__(self):
        self.queue = asyncio.Queue(maxsize=self.queue_size)

    def send(self, message: dict[str, Any]) -> None:
        """Enqueue without waiting; a closed or full channel is a delivery failure"""
        if self.closed:
            raise DeliveryFailure(f"Connection {self.id} is closed")
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull as e:
            raise DeliveryFailure(f"Connection {self.id} is not keeping up") from e
        self.message_count += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake up a reader blocked on the queue; undelivered messages may be dropped
        while True:
            try:
                self.queue.put_nowait(None)
                break
            except asyncio.QueueFull:
                self.queue.get_nowait()


class FanoutHub:
    """
    Registry of open stream connections keyed by connection id.

    Broadcasts only reach connections of the event's tenant. A connection whose
    channel fails is dropped; the others still get the message.
    """

    def __init__(self, heartbeat_interval: float = 30.0, queue_size: int = 1000):
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self.connections: dict[str, StreamConnection] = {}
        self.heartbeat_task: asyncio.Task | None = None
        self.total_connections = 0
        self.total_messages_sent = 0

    # Lifecycle

    async def start(self) -> None:
        if self.heartbeat_task is None:
            self.heartbeat_task = asyncio.create_task(self._heartbeat())
            logger.info("fanout_hub_started", heartbeat_interval=self.heartbeat_interval)

    async def stop(self) -> None:
        if self.heartbeat_task is not None:
            self.heartbeat_task.cancel()
            try:
                await self.heartbeat_task
            except asyncio.CancelledError:
                pass
            self.heartbeat_task = None

        for connection_id in list(self.connections):
            self.disconnect(connection_id, reason="server_shutdown")

        logger.info(
            "fanout_hub_stopped",
            total_connections=self.total_connections,
            messages_sent=self.total_messages_sent
        )

    # Connections

    def connect(self, tenant_id: UUID) -> StreamConnection:
        """Register a connection and acknowledge it straight away"""
        connection = StreamConnection(tenant_id=tenant_id, queue_size=self.queue_size)
        self.connections[connection.id] = connection
        self.total_connections += 1

        connection.send({
            "type": MessageType.CONNECTED.value,
            "connection_id": connection.id,
            "timestamp": _now(),
        })

        logger.info(
            "stream_connected",
            connection_id=connection.id,
            tenant_id=str(tenant_id),
            active_connections=len(self.connections)
        )
        return connection

    def disconnect(self, connection_id: str, reason: str = "client_closed") -> None:
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return
        connection.close()
        logger.info(
            "stream_disconnected",
            connection_id=connection_id,
            tenant_id=str(connection.tenant_id),
            reason=reason,
            messages_sent=connection.message_count,
            active_connections=len(self.connections)
        )

    # Delivery

    def _deliver(self, connection: StreamConnection, message: dict[str, Any]) -> bool:
        try:
            connection.send(message)
            return True
        except DeliveryFailure as e:
            logger.warning("stream_delivery_failed", connection_id=connection.id, error=str(e))
            self.disconnect(connection.id, reason="delivery_failed")
            return False

    def broadcast(self, tenant_id: UUID, event: dict[str, Any]) -> int:
        """Deliver an event to the tenant's connections; returns how many got it"""
        message = {"type": MessageType.EVENT.value, "data": event}
        sent = 0

        # Snapshot: failed deliveries mutate the mapping
        for connection in list(self.connections.values()):
            if connection.tenant_id != tenant_id:
                continue
            if self._deliver(connection, message):
                sent += 1

        self.total_messages_sent += sent
        return sent

    def pulse(self) -> int:
        """Send one liveness message to every open connection"""
        message = {"type": MessageType.HEARTBEAT.value, "timestamp": _now()}
        return sum(
            1 for connection in list(self.connections.values())
            if self._deliver(connection, message)
        )

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                self.pulse()
            except Exception as e:
                logger.error("heartbeat_failed", error=str(e))

    async def stream(self, connection: StreamConnection) -> AsyncIterator[str]:
        """SSE frames for one connection until it closes"""
        try:
            while True:
                message = await connection.queue.get()
                if message is None:
                    break
                yield format_sse(message)
        finally:
            self.disconnect(connection.id)

    def stats(self) -> dict[str, Any]:
        per_tenant = Counter(str(c.tenant_id) for c in self.connections.values())
        return {
            "active_connections": len(self.connections),
            "total_connections": self.total_connections,
            "messages_sent": self.total_messages_sent,
            "connections_per_tenant": dict(per_tenant),
        }
