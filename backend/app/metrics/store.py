from __future__ import annotations

import asyncio
import copy
from typing import Protocol

from app.system_metrics import set_metric


REQUIRED_FINAL_METRIC_FIELDS = (
    "eyeContactPercentage",
    "moodTimeline",
    "averageConfidence",
    "responseQuality",
    "overallEngagement",
)


def missing_final_metric_field(metrics: dict) -> str | None:
    for name in REQUIRED_FINAL_METRIC_FIELDS:
        if name not in metrics:
            return name
    return None


class SessionMetricsStore(Protocol):
    async def get_metrics(self, session_id: str) -> dict | None:
        ...

    async def save_metrics(self, session_id: str, metrics: dict) -> dict:
        ...

    async def update_metrics(self, session_id: str, updates: dict) -> dict | None:
        ...

    async def delete_metrics(self, session_id: str) -> bool:
        ...


class LocalSessionMetricsStore:
    """Final per-session interview metrics, kept in process memory."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._metrics: dict[str, dict] = {}

    def _refresh_gauge(self) -> None:
        set_metric("stored_metrics_sessions", float(len(self._metrics)))

    async def get_metrics(self, session_id: str) -> dict | None:
        if not session_id:
            return None
        async with self._lock:
            current = self._metrics.get(session_id)
            return copy.deepcopy(current) if current is not None else None

    async def save_metrics(self, session_id: str, metrics: dict) -> dict:
        async with self._lock:
            self._metrics[session_id] = copy.deepcopy(dict(metrics or {}))
            self._refresh_gauge()
            return copy.deepcopy(self._metrics[session_id])

    async def update_metrics(self, session_id: str, updates: dict) -> dict | None:
        async with self._lock:
            current = self._metrics.get(session_id)
            if current is None:
                return None
            merged = {**current, **copy.deepcopy(dict(updates or {}))}
            self._metrics[session_id] = merged
            return copy.deepcopy(merged)

    async def delete_metrics(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._metrics.pop(session_id, None) is not None
            self._refresh_gauge()
            return removed
