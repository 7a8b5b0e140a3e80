from __future__ import annotations

import asyncio
import logging

import httpx

from app.metrics.aggregator import SessionMetricsAggregator
from app.metrics.client import RealtimeMetricsClient, RealtimeMetricsError

logger = logging.getLogger("metrics_publisher")


class SnapshotPublisher:
    """Pushes an aggregator's snapshot to the broadcast route on a fixed interval."""

    def __init__(
        self,
        client: RealtimeMetricsClient,
        aggregator: SessionMetricsAggregator,
        session_id: str,
        interval_sec: float = 1.0,
    ):
        self.client = client
        self.aggregator = aggregator
        self.session_id = str(session_id)
        self.interval_sec = max(0.05, float(interval_sec))
        self.published = 0
        self.failures = 0
        self.last_active_connections = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def publish_once(self) -> int:
        active = await self.client.publish(self.session_id, self.aggregator.get_snapshot())
        self.published += 1
        self.last_active_connections = active
        return active

    async def _run(self) -> None:
        while True:
            try:
                await self.publish_once()
            except (RealtimeMetricsError, httpx.HTTPError) as exc:
                self.failures += 1
                logger.warning("Snapshot publish failed; retrying | session_id=%s err=%s", self.session_id, exc)
            await asyncio.sleep(self.interval_sec)

    def start(self) -> None:
        if self.running:
            logger.warning("Snapshot publisher already running | session_id=%s", self.session_id)
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self, end_session: bool = False) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if end_session:
            await self.client.end_session(self.session_id)
