from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging
import os
import time

from app.api.realtime_metrics import router as realtime_metrics_router
from app.api.session_metrics import router as session_metrics_router
from app.metrics.store import LocalSessionMetricsStore
from app.realtime import MetricsBroadcastChannel
from app.system_metrics import get_metrics_snapshot
from core.config import (
    METRICS_SNAPSHOT_TTL_SEC,
    METRICS_STREAM_HEARTBEAT_SEC,
    METRICS_STREAM_IDLE_TIMEOUT_SEC,
    METRICS_STREAM_MAX_PENDING,
    METRICS_SWEEP_INTERVAL_SEC,
    QA_MODE,
)

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

app = FastAPI(title="AI Interviewer – Realtime Metrics")
logger = logging.getLogger("app.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:3001",
            "http://127.0.0.1:3001",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


_allowed_origins = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

# Single-process registry: run one worker, nothing here is shared between instances.
app.state.metrics_channel = MetricsBroadcastChannel(max_pending=METRICS_STREAM_MAX_PENDING)
app.state.session_metrics_store = LocalSessionMetricsStore()

RATE_LIMIT_ENABLED = str(os.getenv("RATE_LIMIT_ENABLED", "true")).strip().lower() in {"1", "true", "yes", "on"}
RATE_LIMIT_WINDOW_SEC = max(10, int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60")))
RATE_LIMIT_MAX_REQUESTS = max(20, int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "600")))
_rate_limit_lock = asyncio.Lock()
_rate_limit_buckets: dict[str, dict[str, float]] = {}
_metrics_sweep_task: asyncio.Task | None = None


def _request_identity(request: Request) -> str:
    forwarded_for = str(request.headers.get("x-forwarded-for") or "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or "unknown"
    if request.client and request.client.host:
        return str(request.client.host)
    return "unknown"


async def _is_rate_limited(identity: str, now_ts: float) -> tuple[bool, int]:
    async with _rate_limit_lock:
        bucket = _rate_limit_buckets.get(identity)
        if bucket is None:
            _rate_limit_buckets[identity] = {
                "window_start": now_ts,
                "count": 1,
            }
            return False, 0

        window_start = float(bucket.get("window_start") or now_ts)
        elapsed = now_ts - window_start
        if elapsed >= RATE_LIMIT_WINDOW_SEC:
            bucket["window_start"] = now_ts
            bucket["count"] = 1
            return False, 0

        count = int(bucket.get("count") or 0)
        if count >= RATE_LIMIT_MAX_REQUESTS:
            retry_after = max(1, int(RATE_LIMIT_WINDOW_SEC - elapsed))
            return True, retry_after

        bucket["count"] = count + 1

        if len(_rate_limit_buckets) > 10000:
            stale_keys = [
                key
                for key, value in _rate_limit_buckets.items()
                if now_ts - float((value or {}).get("window_start") or now_ts) > (RATE_LIMIT_WINDOW_SEC * 2)
            ]
            for key in stale_keys[:3000]:
                _rate_limit_buckets.pop(key, None)

        return False, 0


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if not RATE_LIMIT_ENABLED:
        return await call_next(request)

    path = request.url.path
    if request.method == "OPTIONS" or path.startswith("/docs") or path.startswith("/redoc") or path.startswith("/openapi.json"):
        return await call_next(request)

    identity = _request_identity(request)
    blocked, retry_after = await _is_rate_limited(identity, time.time())
    if blocked:
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Rate limit exceeded",
                "retry_after_sec": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )

    return await call_next(request)


def sweep_metrics_channel(channel: MetricsBroadcastChannel, now_ts: float | None = None) -> dict[str, int]:
    idle_closed = channel.close_idle(METRICS_STREAM_IDLE_TIMEOUT_SEC, now_ts=now_ts)
    snapshots_expired = channel.cleanup_stale_snapshots(METRICS_SNAPSHOT_TTL_SEC, now_ts=now_ts)
    return {"idle_closed": idle_closed, "snapshots_expired": snapshots_expired}


@app.on_event("startup")
async def startup_banner():
    global _metrics_sweep_task
    if QA_MODE:
        logger.info("[SYSTEM] QA_MODE ENABLED")
    logger.info("[SYSTEM] CORS allow_origins=%s", _allowed_origins)
    logger.info(
        "[SYSTEM] rate_limit enabled=%s window_sec=%s max_requests=%s",
        RATE_LIMIT_ENABLED,
        RATE_LIMIT_WINDOW_SEC,
        RATE_LIMIT_MAX_REQUESTS,
    )
    logger.info(
        "[SYSTEM] metrics stream heartbeat_sec=%s idle_timeout_sec=%s max_pending=%s snapshot_ttl_sec=%s",
        METRICS_STREAM_HEARTBEAT_SEC,
        METRICS_STREAM_IDLE_TIMEOUT_SEC,
        METRICS_STREAM_MAX_PENDING,
        METRICS_SNAPSHOT_TTL_SEC,
    )

    async def _metrics_sweep_loop():
        while True:
            await asyncio.sleep(METRICS_SWEEP_INTERVAL_SEC)
            result = sweep_metrics_channel(app.state.metrics_channel)
            if result["idle_closed"] or result["snapshots_expired"]:
                logger.info(
                    "[SYSTEM] metrics sweep idle_closed=%s snapshots_expired=%s",
                    result["idle_closed"],
                    result["snapshots_expired"],
                )

    _metrics_sweep_task = asyncio.create_task(_metrics_sweep_loop())


@app.on_event("shutdown")
async def shutdown_handler():
    global _metrics_sweep_task
    if _metrics_sweep_task is not None:
        _metrics_sweep_task.cancel()
        try:
            await _metrics_sweep_task
        except asyncio.CancelledError:
            pass
        finally:
            _metrics_sweep_task = None
    closed = app.state.metrics_channel.close_all()
    logger.info("[SYSTEM] shutdown complete closed_streams=%s", closed)


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "service": "backend"}


@app.get("/api/system/metrics")
async def system_metrics_route(request: Request):
    return get_metrics_snapshot(extra={
        "channel": request.app.state.metrics_channel.stats(),
        "stream_idle_timeout_sec": METRICS_STREAM_IDLE_TIMEOUT_SEC,
        "snapshot_ttl_sec": METRICS_SNAPSHOT_TTL_SEC,
    })


app.include_router(realtime_metrics_router)
app.include_router(session_metrics_router)
