import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "sse_connections_active": 0.0,
    "sse_sessions_active": 0.0,
    "sse_connections_total": 0.0,
    "sse_disconnects_total": 0.0,
    "sse_dead_connections_pruned": 0.0,
    "sse_idle_connections_closed": 0.0,
    "metrics_publishes_total": 0.0,
    "metrics_deliveries_total": 0.0,
    "metrics_sessions_ended": 0.0,
    "metrics_snapshots_expired": 0.0,
    "stored_metrics_sessions": 0.0,
    "stream_duration_total_sec": 0.0,
    "stream_duration_samples": 0.0,
    "fanout_total_ms": 0.0,
    "fanout_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def set_metric(name: str, value: float) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = max(0.0, float(value))


def observe_stream_duration(seconds: float) -> None:
    duration = max(0.0, float(seconds or 0.0))
    with _lock:
        _metrics["stream_duration_total_sec"] = float(_metrics.get("stream_duration_total_sec", 0.0)) + duration
        _metrics["stream_duration_samples"] = float(_metrics.get("stream_duration_samples", 0.0)) + 1.0


def observe_fanout_ms(value_ms: float) -> None:
    elapsed = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["fanout_total_ms"] = float(_metrics.get("fanout_total_ms", 0.0)) + elapsed
        _metrics["fanout_samples"] = float(_metrics.get("fanout_samples", 0.0)) + 1.0


def reset_metrics() -> None:
    with _lock:
        for key in list(_metrics.keys()):
            _metrics[key] = 0.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    stream_samples = max(1.0, float(data.get("stream_duration_samples") or 0.0))
    fanout_samples = max(1.0, float(data.get("fanout_samples") or 0.0))

    payload: dict[str, Any] = {
        "generated_at": time.time(),
        # Raw counters/totals (useful for computing deltas over a test window)
        "stream_duration_total_sec": float(data.get("stream_duration_total_sec") or 0.0),
        "stream_duration_samples": int(data.get("stream_duration_samples") or 0.0),
        "fanout_total_ms": float(data.get("fanout_total_ms") or 0.0),
        "fanout_samples": int(data.get("fanout_samples") or 0.0),
        "sse_connections_active": int(data.get("sse_connections_active") or 0.0),
        "sse_sessions_active": int(data.get("sse_sessions_active") or 0.0),
        "sse_connections_total": int(data.get("sse_connections_total") or 0.0),
        "sse_disconnects_total": int(data.get("sse_disconnects_total") or 0.0),
        "sse_dead_connections_pruned": int(data.get("sse_dead_connections_pruned") or 0.0),
        "sse_idle_connections_closed": int(data.get("sse_idle_connections_closed") or 0.0),
        "metrics_publishes_total": int(data.get("metrics_publishes_total") or 0.0),
        "metrics_deliveries_total": int(data.get("metrics_deliveries_total") or 0.0),
        "metrics_sessions_ended": int(data.get("metrics_sessions_ended") or 0.0),
        "metrics_snapshots_expired": int(data.get("metrics_snapshots_expired") or 0.0),
        "stored_metrics_sessions": int(data.get("stored_metrics_sessions") or 0.0),
        "avg_stream_duration": round(float(data.get("stream_duration_total_sec") or 0.0) / stream_samples, 4),
        "avg_fanout_ms": round(float(data.get("fanout_total_ms") or 0.0) / fanout_samples, 3),
    }

    if extra:
        payload.update(extra)
    return payload
