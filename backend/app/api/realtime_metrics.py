from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
import asyncio
import json
import logging
import time
from typing import AsyncIterator

from app.realtime import MetricsBroadcastChannel, MetricsSubscription, normalize_session_id
from app.schemas import RealtimeMetricsUpdate, RealtimeMetricsUpdateResponse
from app.system_metrics import observe_stream_duration
from core.config import METRICS_STREAM_HEARTBEAT_SEC
from core.logger import log_event

logger = logging.getLogger("realtime_metrics")

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
    "X-Accel-Buffering": "no",
}
SSE_KEEPALIVE = ": keep-alive\n\n"


def get_metrics_channel(request: Request) -> MetricsBroadcastChannel:
    return request.app.state.metrics_channel


def _session_id_required() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Session ID is required"})


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, allow_nan=False, default=str)}\n\n"


async def metrics_event_stream(
    channel: MetricsBroadcastChannel,
    subscription: MetricsSubscription,
    heartbeat_sec: float | None = None,
) -> AsyncIterator[str]:
    # Starlette cancels this generator when the client goes away; the finally
    # block is the disconnect hook that releases the registration.
    started = time.monotonic()
    reason = "closed"
    try:
        async for message in subscription.messages(heartbeat_sec=heartbeat_sec):
            if message is None:
                yield SSE_KEEPALIVE
                continue
            try:
                frame = format_sse(message)
            except ValueError as exc:
                logger.warning(
                    "Dropping unencodable metrics message | session_id=%s err=%s",
                    subscription.session_id,
                    exc,
                )
                continue
            yield frame
    except asyncio.CancelledError:
        reason = "client_disconnect"
        raise
    finally:
        channel.unsubscribe(subscription.session_id, subscription)
        observe_stream_duration(time.monotonic() - started)
        log_event(
            "realtime_metrics",
            "stream_closed",
            subscription.session_id,
            connection_id=subscription.connection_id,
            reason=reason,
        )


@router.get("/api/interview/metrics/realtime")
async def stream_realtime_metrics(
    sessionId: str | None = Query(default=None),
    channel: MetricsBroadcastChannel = Depends(get_metrics_channel),
):
    session_id = normalize_session_id(sessionId)
    if not session_id:
        return _session_id_required()

    subscription = channel.subscribe(session_id)
    return StreamingResponse(
        metrics_event_stream(channel, subscription, heartbeat_sec=METRICS_STREAM_HEARTBEAT_SEC),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/api/interview/metrics/realtime", response_model=RealtimeMetricsUpdateResponse)
async def publish_realtime_metrics(
    payload: RealtimeMetricsUpdate,
    channel: MetricsBroadcastChannel = Depends(get_metrics_channel),
):
    session_id = normalize_session_id(payload.sessionId)
    if not session_id:
        return _session_id_required()
    if payload.metrics is None:
        return JSONResponse(status_code=400, content={"error": "Metrics are required"})

    delivered = channel.publish(session_id, payload.metrics.to_payload(), message_type=payload.type or "metrics")
    log_event("realtime_metrics", "publish", session_id, active_connections=delivered, type=payload.type or "metrics")
    return {
        "success": True,
        "message": "Metrics broadcasted successfully",
        "activeConnections": delivered,
    }


@router.delete("/api/interview/metrics/realtime")
async def end_realtime_metrics_session(
    sessionId: str | None = Query(default=None),
    channel: MetricsBroadcastChannel = Depends(get_metrics_channel),
):
    session_id = normalize_session_id(sessionId)
    if not session_id:
        return _session_id_required()

    closed = channel.end_session(session_id)
    logger.info("Realtime metrics session ended | session_id=%s closed_connections=%s", session_id, closed)
    return {
        "success": True,
        "message": "Session metrics cleaned up successfully",
    }
