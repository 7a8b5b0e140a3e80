from __future__ import annotations

import asyncio
import time
import uuid
from typing import AsyncIterator, Callable


_CLOSE = object()


class SubscriptionClosedError(RuntimeError):
    pass


class SubscriptionBacklogError(RuntimeError):
    pass


class MetricsSubscription:
    """One open stream reader registered for a session.

    The channel pushes messages without awaiting; the SSE response drains them
    through `messages()`. Closing lets already queued messages drain first.
    """

    def __init__(self, session_id: str, max_pending: int = 256, clock: Callable[[], float] | None = None):
        self.session_id = str(session_id)
        self.connection_id = f"sse-{uuid.uuid4()}"
        self.max_pending = max(1, int(max_pending))
        self._clock = clock or time.time
        self.created_at = self._clock()
        self.last_activity_at = self.created_at
        self.delivered = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def push(self, message: dict) -> None:
        if self._closed:
            raise SubscriptionClosedError(f"subscription {self.connection_id} is closed")
        if self._queue.qsize() >= self.max_pending:
            raise SubscriptionBacklogError(
                f"subscription {self.connection_id} has {self._queue.qsize()} undelivered messages"
            )
        self._queue.put_nowait(message)
        self.delivered += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    def touch(self, now_ts: float | None = None) -> None:
        self.last_activity_at = float(now_ts if now_ts is not None else self._clock())

    def idle_for(self, now_ts: float | None = None) -> float:
        now_value = float(now_ts if now_ts is not None else self._clock())
        return max(0.0, now_value - self.last_activity_at)

    async def receive(self, timeout: float | None = None) -> dict | None:
        """Next message, or None once closed and drained.

        Raises asyncio.TimeoutError when nothing arrives within `timeout`.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        self.touch()
        if item is _CLOSE:
            return None
        return item

    async def messages(self, heartbeat_sec: float | None = None) -> AsyncIterator[dict | None]:
        # None is yielded on every heartbeat tick so the transport can write a keep-alive.
        while True:
            try:
                message = await self.receive(timeout=heartbeat_sec)
            except asyncio.TimeoutError:
                self.touch()
                yield None
                continue
            if message is None:
                return
            yield message
