import asyncio
import json

import httpx
import pytest

from app.metrics.aggregator import SessionMetricsAggregator
from app.metrics.client import RealtimeMetricsClient, RealtimeMetricsError, parse_sse_lines
from app.metrics.export import metrics_summary, metrics_to_csv
from app.metrics.publisher import SnapshotPublisher


def _asgi_client(app) -> RealtimeMetricsClient:
    transport = httpx.ASGITransport(app=app)
    return RealtimeMetricsClient(http_client=httpx.AsyncClient(transport=transport, base_url="http://testserver"))


def _mock_client(handler) -> RealtimeMetricsClient:
    transport = httpx.MockTransport(handler)
    return RealtimeMetricsClient(http_client=httpx.AsyncClient(transport=transport, base_url="http://testserver"))


def test_parse_sse_lines_handles_data_and_garbage():
    assert parse_sse_lines(['data: {"type": "connected"}']) == {"type": "connected"}
    assert parse_sse_lines(["event: ping"]) is None
    assert parse_sse_lines(["data: {not json"]) is None


@pytest.mark.asyncio
async def test_client_publish_reaches_channel_subscribers(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-1")
    aggregator = SessionMetricsAggregator("s-1")
    aggregator.add_sample({"eyeContact": True, "confidence": 0.8, "timestamp": 1000})

    client = _asgi_client(metrics_app)
    active = await client.publish("s-1", aggregator.get_snapshot())
    assert active == 1

    assert (await subscription.receive(timeout=1.0))["type"] == "connected"
    message = await subscription.receive(timeout=1.0)
    assert message["type"] == "metrics"
    assert message["data"]["eyeContactPercentage"] == pytest.approx(100.0)
    assert message["data"]["moodTimeline"][0]["dominantEmotion"] == "neutral"

    await client.end_session("s-1")
    assert (await subscription.receive(timeout=1.0))["type"] == "session_ended"
    assert await subscription.receive(timeout=1.0) is None


@pytest.mark.asyncio
async def test_client_raises_with_server_error_text(metrics_app):
    client = _asgi_client(metrics_app)

    with pytest.raises(RealtimeMetricsError) as excinfo:
        await client.publish("", {"eyeContactPercentage": 1.0})

    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "Session ID is required"


@pytest.mark.asyncio
async def test_client_stored_metrics_round_trip(metrics_app):
    client = _asgi_client(metrics_app)
    aggregator = SessionMetricsAggregator("s-1")
    aggregator.add_sample({"eyeContact": False, "confidence": 0.4, "timestamp": 1000})

    assert await client.get_metrics("s-1") is None
    await client.store_metrics("s-1", aggregator.get_snapshot())

    stored = await client.get_metrics("s-1")
    assert stored["averageConfidence"] == pytest.approx(0.4)

    merged = await client.update_metrics("s-1", {"responseQuality": 0.9})
    assert merged["responseQuality"] == 0.9
    assert await client.delete_metrics("s-1") is True
    assert await client.delete_metrics("s-1") is False


@pytest.mark.asyncio
async def test_client_stream_decodes_events_and_skips_comments():
    frames = [
        {"type": "connected", "sessionId": "s-1", "timestamp": 1},
        {"type": "metrics", "data": {"eyeContactPercentage": 50.0}, "timestamp": 2},
        {"type": "session_ended", "sessionId": "s-1", "timestamp": 3},
    ]
    body = ": keep-alive\n\n" + "".join(f"data: {json.dumps(frame)}\n\n" for frame in frames)
    seen_params = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen_params.append(dict(request.url.params))
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode("utf-8"))

    client = _mock_client(_handler)
    received = [message async for message in client.stream("s-1")]

    assert received == frames
    assert seen_params == [{"sessionId": "s-1"}]


@pytest.mark.asyncio
async def test_client_stream_raises_on_rejected_subscribe():
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "Session ID is required"})

    client = _mock_client(_handler)
    with pytest.raises(RealtimeMetricsError) as excinfo:
        async for _ in client.stream(""):
            pass
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_publisher_pushes_periodically_and_ends_session(metrics_app):
    channel = metrics_app.state.metrics_channel
    subscription = channel.subscribe("s-pub")
    aggregator = SessionMetricsAggregator("s-pub")
    aggregator.add_sample({"eyeContact": True, "confidence": 0.9, "timestamp": 1000})

    publisher = SnapshotPublisher(_asgi_client(metrics_app), aggregator, "s-pub", interval_sec=0.05)
    publisher.start()
    assert publisher.running is True
    await asyncio.sleep(0.2)
    await publisher.stop(end_session=True)

    assert publisher.running is False
    assert publisher.published >= 2
    assert publisher.last_active_connections == 1

    types = []
    while True:
        message = await subscription.receive(timeout=1.0)
        if message is None:
            break
        types.append(message["type"])
    assert types[0] == "connected"
    assert "metrics" in types
    assert types[-1] == "session_ended"


@pytest.mark.asyncio
async def test_publisher_keeps_running_after_failures():
    calls = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.method)
        return httpx.Response(500, json={"error": "boom"})

    aggregator = SessionMetricsAggregator("s-1")
    publisher = SnapshotPublisher(_mock_client(_handler), aggregator, "s-1", interval_sec=0.05)
    publisher.start()
    await asyncio.sleep(0.2)
    await publisher.stop()

    assert publisher.failures >= 2
    assert publisher.published == 0
    assert set(calls) == {"POST"}


FINAL_METRICS = {
    "eyeContactPercentage": 62.5,
    "averageConfidence": 0.71,
    "responseQuality": 0.66,
    "overallEngagement": 0.58,
    "moodTimeline": [
        {"timestamp": 1_700_000_000_000, "dominantEmotion": "happy", "confidence": 0.7},
        {"timestamp": 1_700_000_004_500, "dominantEmotion": "neutral", "confidence": 0.5},
        {"timestamp": 1_700_000_009_250, "dominantEmotion": "happy", "confidence": 0.8},
    ],
}


def test_metrics_to_csv_lists_final_metrics_then_timeline():
    assert metrics_to_csv(FINAL_METRICS) == (
        "Metric,Value\n"
        "Eye Contact Percentage,62.5\n"
        "Average Confidence,0.71\n"
        "Response Quality,0.66\n"
        "Overall Engagement,0.58\n"
        "\n"
        "Timestamp,Dominant Emotion,Confidence\n"
        "2023-11-14T22:13:20.000Z,happy,0.7\n"
        "2023-11-14T22:13:24.500Z,neutral,0.5\n"
        "2023-11-14T22:13:29.250Z,happy,0.8\n"
    )


def test_metrics_summary_rounds_percentages_and_picks_frequent_mood():
    assert metrics_summary("s-1", FINAL_METRICS) == {
        "sessionId": "s-1",
        "eyeContactPercentage": 63,
        "averageConfidence": 71,
        "responseQuality": 66,
        "overallEngagement": 58,
        "dominantMood": "happy",
        "totalDataPoints": 3,
        "sessionDuration": 9,
    }


def test_metrics_summary_with_empty_timeline():
    summary = metrics_summary("s-1", {**FINAL_METRICS, "moodTimeline": []})

    assert summary["dominantMood"] == "neutral"
    assert summary["totalDataPoints"] == 0
    assert summary["sessionDuration"] == 0


@pytest.mark.asyncio
async def test_client_exports_and_summarizes_stored_metrics(metrics_app):
    client = _asgi_client(metrics_app)
    await client.store_metrics("s-1", FINAL_METRICS)

    assert json.loads(await client.export_metrics_json("s-1")) == FINAL_METRICS
    assert (await client.export_metrics_csv("s-1")).startswith("Metric,Value\n")
    assert (await client.get_metrics_summary("s-1"))["dominantMood"] == "happy"

    assert await client.get_metrics_summary("missing") is None
    with pytest.raises(RealtimeMetricsError) as excinfo:
        await client.export_metrics_csv("missing")
    assert excinfo.value.status_code == 404
