import asyncio
import json

import httpx
import pytest

from analytics_sdk.client import Analytics, AnalyticsClientError


class RecordingTransport(httpx.MockTransport):
    """Answers with queued responses and records every request"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        super().__init__(self.respond)

    def respond(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def batches(self) -> list[list[str]]:
        return [
            [event["event"] for event in json.loads(request.content)["events"]]
            for request in self.requests
            if request.url.path == "/track/batch"
        ]


def batch_ack(count=1):
    return httpx.Response(201, json={"success": True, "eventIds": [], "count": count})


def test_api_key_required():
    with pytest.raises(ValueError):
        Analytics("")


@pytest.mark.asyncio
async def test_failed_flush_requeues_events_in_order():
    transport = RecordingTransport(httpx.Response(503, json={"detail": "Failed to track events"}))
    client = Analytics("key", batch_size=10, transport=transport)

    for name in ["e1", "e2", "e3"]:
        await client.track(name, {"n": name})
    queued = client.pending

    with pytest.raises(AnalyticsClientError) as exc_info:
        await client.flush()

    assert exc_info.value.status_code == 503
    assert exc_info.value.message == "Failed to track events"
    assert client.pending == queued
    assert [event["event"] for event in client.pending] == ["e1", "e2", "e3"]
    await client.client.aclose()


@pytest.mark.asyncio
async def test_connection_error_requeues_ahead_of_new_events():
    transport = RecordingTransport(httpx.ConnectError("connection refused"), batch_ack(3))
    client = Analytics("key", batch_size=10, transport=transport)

    await client.track("e1")
    await client.track("e2")
    with pytest.raises(AnalyticsClientError):
        await client.flush()
    await client.track("e3")

    result = await client.flush()

    assert result["success"] is True
    assert transport.batches() == [["e1", "e2"], ["e1", "e2", "e3"]]
    assert client.pending == []
    await client.client.aclose()


@pytest.mark.asyncio
async def test_reaching_batch_size_flushes():
    transport = RecordingTransport(batch_ack(2))
    client = Analytics("secret", batch_size=2, transport=transport)

    first = await client.track("e1", user_id="u1")
    second = await client.track("e2", session_id="s1")

    assert first == {"queued": True, "queueSize": 1}
    assert second == {"queued": True, "queueSize": 0}
    [request] = transport.requests
    assert request.headers["X-API-Key"] == "secret"
    sent = json.loads(request.content)["events"]
    assert sent[0]["userId"] == "u1"
    assert sent[1]["sessionId"] == "s1"
    await client.client.aclose()


@pytest.mark.asyncio
async def test_unbatched_track_returns_server_ack():
    ack = {"success": True, "eventId": "0b7c", "timestamp": "2024-03-01T10:00:00+00:00"}
    transport = RecordingTransport(httpx.Response(201, json=ack))
    client = Analytics("key", enable_batching=False, transport=transport)

    result = await client.track("signup", {"plan": "pro"})

    assert result == ack
    [request] = transport.requests
    assert request.url.path == "/track"
    assert json.loads(request.content)["event"] == "signup"
    assert client.pending == []
    await client.client.aclose()


@pytest.mark.asyncio
async def test_flush_with_empty_queue_sends_nothing():
    transport = RecordingTransport(batch_ack())
    client = Analytics("key", transport=transport)

    assert await client.flush() == {"success": True, "count": 0}
    assert transport.requests == []
    await client.client.aclose()


@pytest.mark.asyncio
async def test_shutdown_flushes_remaining_events():
    transport = RecordingTransport(batch_ack(2))
    client = Analytics("key", flush_interval=60, transport=transport)
    client.start()

    await client.page("/pricing")
    await client.identify("u1", {"plan": "pro"})
    await client.shutdown()

    assert transport.batches() == [["page_view", "user_identify"]]
    assert client._flush_task is None
    assert client.client.is_closed


@pytest.mark.asyncio
async def test_auto_flush_survives_failures():
    transport = RecordingTransport(httpx.Response(500, text="boom"), batch_ack())
    client = Analytics("key", flush_interval=0.01, transport=transport)
    client.start()

    await client.track("e1")
    for _ in range(100):
        await asyncio.sleep(0.01)
        if len(transport.batches()) >= 2:
            break

    assert transport.batches()[:2] == [["e1"], ["e1"]]
    assert client.pending == []
    await client.shutdown()


@pytest.mark.asyncio
async def test_query_passes_only_given_filters():
    transport = RecordingTransport(httpx.Response(200, json={"events": [], "count": 0, "offset": 0, "limit": 5}))
    client = Analytics("key", transport=transport)

    await client.query(event_type="signup", limit=5)

    [request] = transport.requests
    assert request.url.path == "/events"
    assert dict(request.url.params) == {"event_type": "signup", "limit": "5"}
    await client.client.aclose()
