from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.metrics.store import SessionMetricsStore, missing_final_metric_field
from app.realtime import normalize_session_id
from app.schemas import StoredMetricsRequest
from core.logger import log_event

router = APIRouter()


def get_session_metrics_store(request: Request) -> SessionMetricsStore:
    return request.app.state.session_metrics_store


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.get("/api/interview/metrics")
async def get_session_metrics(
    sessionId: str | None = Query(default=None),
    store: SessionMetricsStore = Depends(get_session_metrics_store),
):
    session_id = normalize_session_id(sessionId)
    if not session_id:
        return _error(400, "Session ID is required")

    metrics = await store.get_metrics(session_id)
    if metrics is None:
        return _error(404, "Metrics not found for this session")
    return {"success": True, "data": metrics}


@router.post("/api/interview/metrics")
async def store_session_metrics(
    payload: StoredMetricsRequest,
    store: SessionMetricsStore = Depends(get_session_metrics_store),
):
    session_id = normalize_session_id(payload.sessionId)
    if not session_id or not payload.metrics:
        return _error(400, "Session ID and metrics are required")

    missing = missing_final_metric_field(payload.metrics)
    if missing:
        return _error(400, f"Missing required field: {missing}")

    await store.save_metrics(session_id, payload.metrics)
    log_event("session_metrics", "stored", session_id, fields=sorted(payload.metrics.keys()))
    return {"success": True, "message": "Metrics stored successfully"}


@router.put("/api/interview/metrics")
async def update_session_metrics(
    payload: StoredMetricsRequest,
    store: SessionMetricsStore = Depends(get_session_metrics_store),
):
    session_id = normalize_session_id(payload.sessionId)
    if not session_id or not payload.metrics:
        return _error(400, "Session ID and metrics are required")

    merged = await store.update_metrics(session_id, payload.metrics)
    if merged is None:
        return _error(404, "Metrics not found for this session")
    log_event("session_metrics", "updated", session_id, fields=sorted(payload.metrics.keys()))
    return {"success": True, "message": "Metrics updated successfully", "data": merged}


@router.delete("/api/interview/metrics")
async def delete_session_metrics(
    sessionId: str | None = Query(default=None),
    store: SessionMetricsStore = Depends(get_session_metrics_store),
):
    session_id = normalize_session_id(sessionId)
    if not session_id:
        return _error(400, "Session ID is required")

    removed = await store.delete_metrics(session_id)
    if not removed:
        return _error(404, "Metrics not found for this session")
    log_event("session_metrics", "deleted", session_id)
    return {"success": True, "message": "Metrics deleted successfully"}
