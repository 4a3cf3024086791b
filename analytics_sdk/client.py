"""Async tracking client with client-side batching.

Events are buffered and sent as one batch when the buffer reaches
``batch_size``, every ``flush_interval`` seconds, on ``flush()`` and on
``shutdown()``. A failed flush puts the events back at the front of the buffer,
so delivery is at-least-once: a batch the server received before the failure
was detected will be sent again.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()


class AnalyticsClientError(Exception):
    """A request to the analytics API failed"""

    def __init__(self, operation: str, message: str, status_code: int | None = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message
        self.status_code = status_code


class Analytics:
    def __init__(
            self,
            api_key: str,
            base_url: str = "http://localhost:8000",
            timeout: float = 5.0,
            batch_size: int = 100,
            flush_interval: float = 10.0,
            enable_batching: bool = True,
            transport: httpx.AsyncBaseTransport | None = None
    ):
        if not api_key:
            raise ValueError("API key is required")

        self.api_key = api_key
        self.base_url = base_url
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.enable_batching = enable_batching

        self._queue: list[dict[str, Any]] = []
        self._flush_task: asyncio.Task | None = None

        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"X-API-Key": api_key, "Content-Type": "application/json"},
            transport=transport
        )

    async def __aenter__(self) -> "Analytics":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    @property
    def pending(self) -> list[dict[str, Any]]:
        """Copy of the events waiting to be flushed"""
        return list(self._queue)

    def start(self) -> None:
        """Start the recurring flush (needs a running event loop)"""
        if self.enable_batching and self._flush_task is None:
            self._flush_task = asyncio.create_task(self._auto_flush())

    async def track(
            self,
            event: str,
            properties: dict[str, Any] | None = None,
            *,
            user_id: str | None = None,
            session_id: str | None = None,
            enable_batching: bool | None = None
    ) -> dict[str, Any]:
        """
        Track an event.

        Unbatched calls return the server acknowledgment; batched calls return
        ``{"queued": True, "queueSize": n}``.
        """
        event_data = {
            "event": event,
            "properties": properties or {},
            "userId": user_id,
            "sessionId": session_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        batching = self.enable_batching if enable_batching is None else enable_batching
        if not batching:
            return await self._send("track", "POST", "/track", json=event_data)

        self._queue.append(event_data)
        if len(self._queue) >= self.batch_size:
            await self.flush()

        return {"queued": True, "queueSize": len(self._queue)}

    async def flush(self) -> dict[str, Any]:
        """Send everything queued as one batch; re-queue it if sending fails"""
        if not self._queue:
            return {"success": True, "count": 0}

        # Swap the buffer out before awaiting so concurrent track() calls queue behind it
        events, self._queue = self._queue, []

        try:
            return await self._send("flush", "POST", "/track/batch", json={"events": events})
        except (AnalyticsClientError, asyncio.CancelledError):
            self._queue[:0] = events
            raise

    async def identify(self, user_id: str, traits: dict[str, Any] | None = None) -> dict[str, Any]:
        """Track user traits as a user_identify event"""
        traits = traits or {}
        return await self.track(
            "user_identify",
            {"userId": user_id, "traits": traits, **traits},
            user_id=user_id
        )

    async def page(
            self,
            name: str,
            properties: dict[str, Any] | None = None,
            **options: Any
    ) -> dict[str, Any]:
        """Track a page view"""
        return await self.track("page_view", {"page": name, **(properties or {})}, **options)

    async def query(
            self,
            event_type: str | None = None,
            start_date: str | None = None,
            end_date: str | None = None,
            limit: int | None = None,
            offset: int | None = None
    ) -> dict[str, Any]:
        """List stored events"""
        params = {
            "event_type": event_type,
            "start_date": start_date,
            "end_date": end_date,
            "limit": limit,
            "offset": offset,
        }
        params = {key: value for key, value in params.items() if value is not None}
        return await self._send("query", "GET", "/events", params=params)

    async def ping(self) -> dict[str, Any]:
        return await self._send("ping", "GET", "/health")

    async def shutdown(self) -> None:
        """Stop the recurring flush, send what is left and close the connection"""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        try:
            if self._queue:
                await self.flush()
        finally:
            await self.client.aclose()

    async def _auto_flush(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            if not self._queue:
                continue
            try:
                await self.flush()
            except AnalyticsClientError as e:
                logger.warning("analytics_auto_flush_failed", error=e.message, pending=len(self._queue))

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = _error_detail(e.response)
            logger.error("analytics_request_failed", operation=operation, status_code=e.response.status_code, error=message)
            raise AnalyticsClientError(operation, message, e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.error("analytics_request_failed", operation=operation, error=str(e))
            raise AnalyticsClientError(operation, str(e)) from e

        return response.json()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return str(body)
