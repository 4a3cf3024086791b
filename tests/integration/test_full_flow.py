import json

import pytest

from analytics_service.api.events import stream_events
from analytics_service.middleware.rate_limit import RateLimiter
from analytics_service.schemas.event import EventCreate
from analytics_service.services.ingestion import IngestionPipeline


@pytest.mark.asyncio
async def test_health_check(client):
    """Test health endpoint"""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["streams"] == 0


@pytest.mark.asyncio
async def test_index_health(client, headers_a):
    await client.post("/track", json={"type": "page_view"}, headers=headers_a)

    response = await client.get("/health/index")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["documents"] == 1
    assert data["mirror_failures"] == 0


@pytest.mark.asyncio
async def test_track_then_search_flow(client, headers_a):
    """Test complete flow: track event → search it back"""
    response = await client.post("/track", json={
        "type": "signup",
        "userId": "user_1",
        "sessionId": "session_1",
        "properties": {"plan": "pro", "seats": 3},
        "timestamp": "2024-02-01T10:00:00Z"
    }, headers=headers_a)
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["timestamp"].startswith("2024-02-01T10:00:00")
    event_id = data["eventId"]

    response = await client.get(
        "/events/search",
        params={"event_type": "signup", "user_id": "user_1", "prop.plan": "pro"},
        headers=headers_a
    )
    assert response.status_code == 200
    result = response.json()
    assert result["total"] == 1
    assert result["count"] == 1
    [event] = result["events"]
    assert event["id"] == event_id
    assert event["session_id"] == "session_1"
    assert event["properties"] == {"plan": "pro", "seats": 3}

    # Property values compare as strings
    response = await client.get("/events/search", params={"prop.seats": "3"}, headers=headers_a)
    assert response.json()["total"] == 1
    response = await client.get("/events/search", params={"prop.plan": "free"}, headers=headers_a)
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_sdk_wire_names_are_accepted(client, headers_a):
    response = await client.post("/track", json={
        "event": "page_view",
        "properties": {"page": "/pricing"},
        "userId": 42
    }, headers=headers_a)
    assert response.status_code == 201

    response = await client.get("/events", headers=headers_a)
    [event] = response.json()["events"]
    assert event["event_type"] == "page_view"
    assert event["user_id"] == "42"


@pytest.mark.asyncio
async def test_batch_tracking(client, headers_a):
    events = [
        {"type": "page_view", "userId": f"user_{i}", "properties": {"page": "/test"}}
        for i in range(3)
    ]

    response = await client.post("/track/batch", json={"events": events}, headers=headers_a)
    assert response.status_code == 201
    data = response.json()
    assert data["count"] == 3
    assert len(data["eventIds"]) == 3

    response = await client.get("/events", params={"event_type": "page_view"}, headers=headers_a)
    assert response.status_code == 200
    listing = response.json()
    assert listing["count"] == 3
    assert {e["id"] for e in listing["events"]} == set(data["eventIds"])


@pytest.mark.asyncio
async def test_authentication_errors(client):
    """Test that every tenant endpoint requires a valid key"""
    response = await client.post("/track", json={"type": "signup"})
    assert response.status_code == 401
    assert response.json()["detail"] == "API key required"

    response = await client.post("/track", json={"type": "signup"}, headers={"X-API-Key": "wrong"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid API key"

    for path in ["/events", "/events/search", "/events/stream", "/analytics",
                 "/analytics/usage", "/dashboard/config"]:
        response = await client.get(path)
        assert response.status_code == 401, path


@pytest.mark.asyncio
async def test_validation_errors(client, headers_a):
    """Test input validation"""
    # Empty event list
    response = await client.post("/track/batch", json={"events": []}, headers=headers_a)
    assert response.status_code == 422

    # Not a list
    response = await client.post("/track/batch", json={"events": {"type": "x"}}, headers=headers_a)
    assert response.status_code == 422

    # Missing event name
    response = await client.post("/track", json={"properties": {}}, headers=headers_a)
    assert response.status_code == 422

    # Blank event name inside a batch rejects the whole batch
    response = await client.post(
        "/track/batch",
        json={"events": [{"type": "ok"}, {"type": "   "}]},
        headers=headers_a
    )
    assert response.status_code == 422
    response = await client.get("/events", headers=headers_a)
    assert response.json()["count"] == 0

    # Invalid interval and range
    response = await client.get("/analytics", params={"interval": "fortnight"}, headers=headers_a)
    assert response.status_code == 400
    response = await client.get("/analytics", params={
        "start": "2024-03-02T00:00:00Z", "end": "2024-03-01T00:00:00Z"
    }, headers=headers_a)
    assert response.status_code == 400

    # Invalid funnel window
    response = await client.get(
        "/analytics/funnel", params={"steps": "a,b", "window": "soon"}, headers=headers_a
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_batch_size_limit(client, headers_a):
    """Test that batch size is limited to 1000"""
    events = [{"type": "test", "userId": f"user_{i}"} for i in range(1001)]

    response = await client.post("/track/batch", json={"events": events}, headers=headers_a)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_tenant_isolation(client, headers_a, headers_b):
    await client.post("/track", json={"type": "secret", "userId": "a_user"}, headers=headers_a)

    response = await client.get("/events/search", headers=headers_b)
    assert response.json()["total"] == 0
    response = await client.get("/events", headers=headers_b)
    assert response.json()["count"] == 0
    response = await client.get("/analytics", headers=headers_b)
    assert response.json()["total_events"] == 0

    response = await client.get("/events/search", headers=headers_a)
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_analytics_aggregation(client, headers_a):
    await client.post("/track/batch", json={"events": [
        {"type": "signup", "userId": "u1", "timestamp": "2024-03-01T10:15:05Z"},
        {"type": "signup", "userId": "u2", "timestamp": "2024-03-01T10:15:40Z"},
    ]}, headers=headers_a)

    response = await client.get("/analytics", params={
        "start": "2024-03-01T10:15:00Z",
        "end": "2024-03-01T10:15:59Z",
        "interval": "hour"
    }, headers=headers_a)
    assert response.status_code == 200
    data = response.json()
    assert data["total_events"] == 2
    assert data["unique_users"] == 2
    assert data["top_events"] == [{"event": "signup", "count": 2}]
    assert len(data["events_over_time"]) == 1
    assert data["events_over_time"][0]["count"] == 2
    assert data["events_over_time"][0]["date"].startswith("2024-03-01T10:00:00")


@pytest.mark.asyncio
async def test_usage_and_funnel(client, headers_a):
    events = (
        [{"type": "page_view", "userId": f"u{i}"} for i in range(4)]
        + [{"type": "signup", "userId": f"u{i}"} for i in range(2)]
    )
    await client.post("/track/batch", json={"events": events}, headers=headers_a)

    response = await client.get("/analytics/usage", params={"days": 7}, headers=headers_a)
    assert response.status_code == 200
    usage = response.json()
    assert len(usage["events_over_time"]) == 7
    assert usage["events_over_time"][-1]["count"] == 6
    assert usage["total_events"] == 6
    assert usage["growth_rate"] == 0.0

    response = await client.get("/analytics/usage", params={"days": 0}, headers=headers_a)
    assert response.status_code == 422

    response = await client.get(
        "/analytics/funnel", params={"steps": "page_view,signup,purchase"}, headers=headers_a
    )
    assert response.status_code == 200
    funnel = response.json()["funnel"]
    assert [step["count"] for step in funnel] == [4, 2, 0]
    assert [step["conversion_rate"] for step in funnel] == [100.0, 50.0, 0.0]
    assert [step["unique_users"] for step in funnel] == [4, 2, 0]


@pytest.mark.asyncio
async def test_dashboard_config(client, headers_b, tenant_b):
    response = await client.get("/dashboard/config", headers=headers_b)
    assert response.status_code == 200
    data = response.json()
    assert data["tenant"] == {"id": str(tenant_b.id), "name": "Demo Corp"}
    assert data["stream_url"] == "/events/stream"
    assert "hour" in data["intervals"]


@pytest.mark.asyncio
async def test_stream_receives_tracked_events(client, services, headers_a, tenant_a, tenant_b):
    """Subscribers registered with the hub get their own tenant's events only"""
    own = services.hub.connect(tenant_a.id)
    other = services.hub.connect(tenant_b.id)

    response = await client.post("/track", json={"type": "purchase"}, headers=headers_a)
    event_id = response.json()["eventId"]

    frames = [own.queue.get_nowait() for _ in range(own.queue.qsize())]
    assert [f["type"] for f in frames] == ["connected", "event"]
    assert frames[1]["data"]["id"] == event_id
    assert other.queue.qsize() == 1

    response = await client.get("/health")
    assert response.json()["streams"] == 2


@pytest.mark.asyncio
async def test_index_outage_keeps_ingestion_working(client, services, headers_a, failing_index, monkeypatch):
    monkeypatch.setattr(services, "pipeline", IngestionPipeline(services.store, failing_index, services.hub))
    monkeypatch.setattr(services.analytics, "index", failing_index)
    monkeypatch.setattr(services, "index", failing_index)

    response = await client.post("/track", json={"type": "signup"}, headers=headers_a)
    assert response.status_code == 201

    response = await client.get("/events", headers=headers_a)
    assert response.json()["count"] == 1

    response = await client.get("/analytics", headers=headers_a)
    assert response.status_code == 503

    response = await client.get("/health/index")
    assert response.status_code == 503
    assert response.json()["mirror_failures"] == 1


@pytest.mark.asyncio
async def test_rate_limit_headers(client, headers_a):
    """Test that rate limit headers are present"""
    response = await client.get("/events", headers=headers_a)
    assert response.status_code == 200

    # Check rate limit headers exist
    assert "X-RateLimit-Limit" in response.headers
    assert "X-RateLimit-Remaining" in response.headers
    assert "X-RateLimit-Reset" in response.headers


@pytest.mark.asyncio
async def test_rate_limit_exceeded(client, services, headers_a, headers_b):
    services.rate_limiter = RateLimiter(rate=2, period=60)

    for _ in range(2):
        response = await client.get("/events", headers=headers_a)
        assert response.status_code == 200

    response = await client.get("/events", headers=headers_a)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"

    # Limits are per credential
    response = await client.get("/events", headers=headers_b)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_malformed_property_filter_is_bad_request(client, headers_a):
    response = await client.get("/events/search", params={"prop.a[b": "v"}, headers=headers_a)
    assert response.status_code == 400
    assert "Invalid property filter" in response.json()["detail"]


@pytest.mark.asyncio
async def test_stream_route_emits_connected_then_events(services, tenant_a):
    response = await stream_events(tenant=tenant_a, services=services)
    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    frames = response.body_iterator

    connected = json.loads((await anext(frames))[len("data: "):])
    assert connected["type"] == "connected"
    assert services.hub.stats()["active_connections"] == 1

    stored = await services.pipeline.ingest_one(tenant_a.id, EventCreate(type="purchase", properties={"total": 30}))

    frame = await anext(frames)
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    message = json.loads(frame[len("data: "):])
    assert message["type"] == "event"
    assert message["data"]["id"] == str(stored.id)
    assert message["data"]["properties"] == {"total": 30}

    await frames.aclose()
    assert services.hub.stats()["active_connections"] == 0
