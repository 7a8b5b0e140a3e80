from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from app.metrics.export import metrics_summary, metrics_to_csv, metrics_to_json

logger = logging.getLogger("metrics_client")

REALTIME_PATH = "/api/interview/metrics/realtime"
STORED_PATH = "/api/interview/metrics"


class RealtimeMetricsError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = int(status_code)
        self.message = str(message)


def _snapshot_body(snapshot: Any) -> dict:
    to_dict = getattr(snapshot, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return dict(snapshot or {})


def _raise_for_error(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        message = str((response.json() or {}).get("error") or response.text)
    except ValueError:
        message = response.text
    raise RealtimeMetricsError(response.status_code, message)


def parse_sse_lines(lines: list[str]) -> dict | None:
    data_lines = [line[5:].lstrip(" ") for line in lines if line.startswith("data:")]
    if not data_lines:
        return None
    try:
        return json.loads("\n".join(data_lines))
    except ValueError:
        logger.warning("Dropping undecodable SSE event: %s", data_lines[0][:120])
        return None


class RealtimeMetricsClient:
    """HTTP client for the metrics broadcast and stored-metrics routes."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RealtimeMetricsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def publish(self, session_id: str, snapshot: Any, message_type: str | None = None) -> int:
        body: dict[str, Any] = {"sessionId": session_id, "metrics": _snapshot_body(snapshot)}
        if message_type:
            body["type"] = message_type
        response = await self._client.post(REALTIME_PATH, json=body)
        _raise_for_error(response)
        return int(response.json().get("activeConnections") or 0)

    async def end_session(self, session_id: str) -> dict:
        response = await self._client.delete(REALTIME_PATH, params={"sessionId": session_id})
        _raise_for_error(response)
        return response.json()

    async def stream(self, session_id: str) -> AsyncIterator[dict]:
        """Yield decoded stream messages until the server closes the stream."""
        async with self._client.stream(
            "GET",
            REALTIME_PATH,
            params={"sessionId": session_id},
            timeout=httpx.Timeout(10.0, read=None),
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                _raise_for_error(response)

            pending: list[str] = []
            async for line in response.aiter_lines():
                if line:
                    if not line.startswith(":"):
                        pending.append(line)
                    continue
                message = parse_sse_lines(pending)
                pending = []
                if message is not None:
                    yield message
            message = parse_sse_lines(pending)
            if message is not None:
                yield message

    async def store_metrics(self, session_id: str, metrics: Any) -> dict:
        response = await self._client.post(
            STORED_PATH,
            json={"sessionId": session_id, "metrics": _snapshot_body(metrics)},
        )
        _raise_for_error(response)
        return response.json()

    async def get_metrics(self, session_id: str) -> dict | None:
        response = await self._client.get(STORED_PATH, params={"sessionId": session_id})
        if response.status_code == 404:
            return None
        _raise_for_error(response)
        return response.json().get("data")

    async def update_metrics(self, session_id: str, metrics: dict) -> dict:
        response = await self._client.put(STORED_PATH, json={"sessionId": session_id, "metrics": metrics})
        _raise_for_error(response)
        return response.json().get("data") or {}

    async def delete_metrics(self, session_id: str) -> bool:
        response = await self._client.delete(STORED_PATH, params={"sessionId": session_id})
        if response.status_code == 404:
            return False
        _raise_for_error(response)
        return True

    async def _require_metrics(self, session_id: str) -> dict:
        metrics = await self.get_metrics(session_id)
        if metrics is None:
            raise RealtimeMetricsError(404, "No metrics found for this session")
        return metrics

    async def export_metrics_json(self, session_id: str) -> str:
        return metrics_to_json(await self._require_metrics(session_id))

    async def export_metrics_csv(self, session_id: str) -> str:
        return metrics_to_csv(await self._require_metrics(session_id))

    async def get_metrics_summary(self, session_id: str) -> dict | None:
        metrics = await self.get_metrics(session_id)
        if metrics is None:
            return None
        return metrics_summary(session_id, metrics)
