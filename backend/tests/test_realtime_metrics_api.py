import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app.api.realtime_metrics import SSE_KEEPALIVE, format_sse, metrics_event_stream, stream_realtime_metrics


REALTIME_URL = "/api/interview/metrics/realtime"


def _decode(chunk: str) -> dict:
    assert chunk.startswith("data: ")
    assert chunk.endswith("\n\n")
    return json.loads(chunk[len("data: "):])


def _drain(subscription) -> list[dict]:
    messages = []
    while subscription.pending():
        item = subscription._queue.get_nowait()  # test-only direct read
        if isinstance(item, dict):
            messages.append(item)
    return messages


def _asgi_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def test_stream_requires_session_id(metrics_app):
    client = TestClient(metrics_app)

    for params in ({}, {"sessionId": "   "}):
        response = client.get(REALTIME_URL, params=params)
        assert response.status_code == 400
        assert response.json() == {"error": "Session ID is required"}
    assert metrics_app.state.metrics_channel.connection_count() == 0


def test_publish_requires_session_id_and_metrics(metrics_app):
    client = TestClient(metrics_app)

    missing_session = client.post(REALTIME_URL, json={"metrics": {"eyeContactPercentage": 40}})
    assert missing_session.status_code == 400
    assert missing_session.json() == {"error": "Session ID is required"}

    missing_metrics = client.post(REALTIME_URL, json={"sessionId": "s-1"})
    assert missing_metrics.status_code == 400
    assert missing_metrics.json() == {"error": "Metrics are required"}


def test_publish_without_subscribers_stores_snapshot(metrics_app):
    client = TestClient(metrics_app)

    response = client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": {"eyeContactPercentage": 40}})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Metrics broadcasted successfully",
        "activeConnections": 0,
    }
    assert metrics_app.state.metrics_channel.get_snapshot("s-1") == {"eyeContactPercentage": 40.0}


def test_publish_rejects_malformed_snapshot_values(metrics_app):
    client = TestClient(metrics_app)

    response = client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": {"averageConfidence": "high"}})
    assert response.status_code == 422
    assert metrics_app.state.metrics_channel.get_snapshot("s-1") is None


def test_publish_rejects_non_finite_snapshot_values(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-nan")
    _drain(subscription)
    client = TestClient(metrics_app)

    for body in (
        '{"sessionId": "s-nan", "metrics": {"averageConfidence": NaN}}',
        '{"sessionId": "s-nan", "metrics": {"eyeContactPercentage": Infinity}}',
        '{"sessionId": "s-nan", "metrics": {"moodTimeline": [{"timestamp": 1, "confidence": -Infinity}]}}',
    ):
        response = client.post(REALTIME_URL, content=body, headers={"content-type": "application/json"})
        assert response.status_code == 422

    assert channel.get_snapshot("s-nan") is None
    assert _drain(subscription) == []


def test_format_sse_refuses_non_finite_numbers():
    with pytest.raises(ValueError):
        format_sse({"type": "metrics", "data": {"averageConfidence": float("nan")}})


@pytest.mark.asyncio
async def test_stream_skips_unencodable_message_and_keeps_going(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-1")
    stream = metrics_event_stream(channel, subscription)

    assert _decode(await stream.__anext__())["type"] == "connected"
    channel.publish("s-1", {"averageConfidence": float("inf")})
    channel.publish("s-1", {"averageConfidence": 0.4})

    frame = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
    assert _decode(frame)["data"] == {"averageConfidence": 0.4}
    await stream.aclose()


def test_end_session_requires_session_id(metrics_app):
    client = TestClient(metrics_app)

    response = client.delete(REALTIME_URL)
    assert response.status_code == 400
    assert response.json() == {"error": "Session ID is required"}

    ok = client.delete(REALTIME_URL, params={"sessionId": "s-1"})
    assert ok.status_code == 200
    assert ok.json() == {"success": True, "message": "Session metrics cleaned up successfully"}


@pytest.mark.asyncio
async def test_publish_fans_out_to_all_subscribers(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscriptions = [channel.subscribe("s-1") for _ in range(3)]
    for subscription in subscriptions:
        _drain(subscription)

    metrics = {"eyeContactPercentage": 75.0, "averageConfidence": 0.6}
    async with _asgi_client(metrics_app) as client:
        response = await client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": metrics})

    assert response.json()["activeConnections"] == 3
    for subscription in subscriptions:
        messages = _drain(subscription)
        assert len(messages) == 1
        assert messages[0]["type"] == "metrics"
        assert messages[0]["data"] == metrics


@pytest.mark.asyncio
async def test_publish_reports_pruned_connections(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscriptions = [channel.subscribe("s-1") for _ in range(3)]
    subscriptions[0].close()

    async with _asgi_client(metrics_app) as client:
        first = await client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": {"responseQuality": 0.4}})
        second = await client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": {"responseQuality": 0.5}})

    assert first.json()["activeConnections"] == 2
    assert second.json()["activeConnections"] == 2


@pytest.mark.asyncio
async def test_custom_message_type_is_forwarded(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-1")
    _drain(subscription)

    async with _asgi_client(metrics_app) as client:
        await client.post(
            REALTIME_URL,
            json={"sessionId": "s-1", "metrics": {"engagementScore": 61.5}, "type": "engagement"},
        )

    assert _drain(subscription)[0]["type"] == "engagement"


@pytest.mark.asyncio
async def test_delete_ends_streams_and_allows_fresh_session(metrics_app):
    channel = metrics_app.state.metrics_channel
    async with _asgi_client(metrics_app) as client:
        await client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": {"eyeContactPercentage": 20}})
        subscription = channel.subscribe("s-1")
        _drain(subscription)

        response = await client.delete(REALTIME_URL, params={"sessionId": "s-1"})
        assert response.json()["success"] is True

        ended = _drain(subscription)
        assert ended[0]["type"] == "session_ended"
        assert ended[0]["sessionId"] == "s-1"
        assert subscription.closed is True
        assert channel.get_snapshot("s-1") is None

        again = await client.post(REALTIME_URL, json={"sessionId": "s-1", "metrics": {"eyeContactPercentage": 30}})
        assert again.json()["activeConnections"] == 0
        assert channel.get_snapshot("s-1") == {"eyeContactPercentage": 30.0}


@pytest.mark.asyncio
async def test_stream_endpoint_emits_connected_snapshot_and_end(metrics_app):
    channel = metrics_app.state.metrics_channel
    channel.publish("s-1", {"eyeContactPercentage": 55.0})

    response = await stream_realtime_metrics(sessionId="s-1", channel=channel)
    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["access-control-allow-origin"] == "*"

    body = response.body_iterator
    connected = _decode(await body.__anext__())
    assert connected["type"] == "connected"
    assert connected["sessionId"] == "s-1"

    current = _decode(await body.__anext__())
    assert current == {"type": "metrics", "data": {"eyeContactPercentage": 55.0}, "timestamp": current["timestamp"]}

    channel.publish("s-1", {"eyeContactPercentage": 60.0})
    assert _decode(await body.__anext__())["data"] == {"eyeContactPercentage": 60.0}

    channel.end_session("s-1")
    assert _decode(await body.__anext__())["type"] == "session_ended"
    with pytest.raises(StopAsyncIteration):
        await body.__anext__()
    assert channel.connection_count("s-1") == 0


@pytest.mark.asyncio
async def test_client_disconnect_releases_registration(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-1")
    received: list[str] = []

    async def _consume():
        async for chunk in metrics_event_stream(channel, subscription):
            received.append(chunk)

    task = asyncio.create_task(_consume())
    await asyncio.sleep(0.05)
    assert channel.connection_count("s-1") == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert _decode(received[0])["type"] == "connected"
    assert channel.connection_count("s-1") == 0
    assert subscription.closed is True


@pytest.mark.asyncio
async def test_stream_writes_keepalive_comments(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-1")
    stream = metrics_event_stream(channel, subscription, heartbeat_sec=0.01)

    assert _decode(await stream.__anext__())["type"] == "connected"
    assert await asyncio.wait_for(stream.__anext__(), timeout=1.0) == SSE_KEEPALIVE
    await stream.aclose()
    assert channel.connection_count("s-1") == 0


def test_format_sse_frames_json_payload():
    frame = format_sse({"type": "connected", "sessionId": "s-ü"})
    assert frame == 'data: {"type": "connected", "sessionId": "s-ü"}\n\n'
