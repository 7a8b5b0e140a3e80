from __future__ import annotations

import copy
import logging
import time
from collections.abc import Mapping
from typing import Any, Callable

from app.realtime.subscription import (
    MetricsSubscription,
    SubscriptionBacklogError,
    SubscriptionClosedError,
)
from app.system_metrics import increment_metric, observe_fanout_ms, set_metric
from core.logger import log_event

logger = logging.getLogger("metrics_channel")


def normalize_session_id(raw_session_id: Any) -> str:
    if raw_session_id is None:
        return ""
    return str(raw_session_id).strip()


def _snapshot_payload(snapshot: Any) -> dict:
    if snapshot is None:
        return {}
    to_dict = getattr(snapshot, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(snapshot, Mapping):
        return copy.deepcopy(dict(snapshot))
    raise TypeError(f"unsupported snapshot type: {type(snapshot).__name__}")


class MetricsBroadcastChannel:
    """In-process fan-out of metric snapshots keyed by interview session.

    Owns the only copy of the registry: session id -> open subscriptions, and
    session id -> last published snapshot. Methods never await, so on the
    single event loop every call completes before another request touches the
    registry. Not shared between processes.
    """

    def __init__(self, max_pending: int = 256, clock: Callable[[], float] | None = None):
        self._max_pending = max(2, int(max_pending))
        self._clock = clock or time.time
        self._connections: dict[str, set[MetricsSubscription]] = {}
        self._snapshots: dict[str, dict] = {}
        self._snapshot_updated_at: dict[str, float] = {}

    def _timestamp_ms(self) -> int:
        return int(self._clock() * 1000)

    def _refresh_gauges(self) -> None:
        set_metric("sse_sessions_active", float(len(self._connections)))
        set_metric("sse_connections_active", float(self.connection_count()))

    def subscribe(self, session_id: str) -> MetricsSubscription:
        key = normalize_session_id(session_id)
        if not key:
            raise ValueError("session_id is required")

        subscription = MetricsSubscription(key, max_pending=self._max_pending, clock=self._clock)
        self._connections.setdefault(key, set()).add(subscription)

        subscription.push({
            "type": "connected",
            "sessionId": key,
            "timestamp": self._timestamp_ms(),
        })
        current = self._snapshots.get(key)
        if current is not None:
            subscription.push({
                "type": "metrics",
                "data": current,
                "timestamp": self._timestamp_ms(),
            })

        increment_metric("sse_connections_total", 1)
        self._refresh_gauges()
        log_event(
            "metrics_channel",
            "subscribe",
            key,
            connection_id=subscription.connection_id,
            connections=len(self._connections.get(key, ())),
            has_snapshot=current is not None,
        )
        return subscription

    def unsubscribe(self, session_id: str, subscription: MetricsSubscription) -> bool:
        key = normalize_session_id(session_id)
        members = self._connections.get(key)
        removed = False
        if members is not None and subscription in members:
            members.discard(subscription)
            removed = True
            if not members:
                self._connections.pop(key, None)
        subscription.close()

        if removed:
            increment_metric("sse_disconnects_total", 1)
            self._refresh_gauges()
            log_event(
                "metrics_channel",
                "unsubscribe",
                key,
                connection_id=subscription.connection_id,
                connections=len(self._connections.get(key, ())),
            )
        return removed

    def publish(self, session_id: str, snapshot: Any, message_type: str = "metrics") -> int:
        key = normalize_session_id(session_id)
        if not key:
            raise ValueError("session_id is required")

        stored = _snapshot_payload(snapshot)
        self._snapshots[key] = stored
        self._snapshot_updated_at[key] = self._clock()
        increment_metric("metrics_publishes_total", 1)

        members = self._connections.get(key)
        if not members:
            return 0

        started = time.perf_counter()
        message = {
            "type": str(message_type or "metrics"),
            "data": stored,
            "timestamp": self._timestamp_ms(),
        }

        delivered = 0
        dead: list[tuple[MetricsSubscription, Exception]] = []
        for subscription in list(members):
            try:
                subscription.push(message)
                delivered += 1
            except (SubscriptionClosedError, SubscriptionBacklogError) as exc:
                dead.append((subscription, exc))

        for subscription, exc in dead:
            members.discard(subscription)
            subscription.close()
            increment_metric("sse_dead_connections_pruned", 1)
            log_event(
                "metrics_channel",
                "connection_pruned",
                key,
                level=logging.WARNING,
                connection_id=subscription.connection_id,
                reason=exc.__class__.__name__,
            )
        if not members:
            self._connections.pop(key, None)

        increment_metric("metrics_deliveries_total", delivered)
        observe_fanout_ms((time.perf_counter() - started) * 1000.0)
        if dead:
            self._refresh_gauges()
        return delivered

    def end_session(self, session_id: str) -> int:
        key = normalize_session_id(session_id)
        if not key:
            raise ValueError("session_id is required")

        members = self._connections.pop(key, set())
        self._snapshots.pop(key, None)
        self._snapshot_updated_at.pop(key, None)

        message = {
            "type": "session_ended",
            "sessionId": key,
            "timestamp": self._timestamp_ms(),
        }
        for subscription in list(members):
            try:
                subscription.push(message)
            except (SubscriptionClosedError, SubscriptionBacklogError) as exc:
                logger.debug("session_ended not delivered | session_id=%s err=%s", key, exc)
            subscription.close()

        increment_metric("metrics_sessions_ended", 1)
        self._refresh_gauges()
        log_event("metrics_channel", "session_ended", key, closed_connections=len(members))
        return len(members)

    def close_idle(self, max_idle_sec: float, now_ts: float | None = None) -> int:
        now_value = float(now_ts if now_ts is not None else self._clock())
        closed = 0
        for key, members in list(self._connections.items()):
            for subscription in list(members):
                if subscription.idle_for(now_value) < max_idle_sec:
                    continue
                members.discard(subscription)
                subscription.close()
                closed += 1
                log_event(
                    "metrics_channel",
                    "connection_idle_closed",
                    key,
                    connection_id=subscription.connection_id,
                    idle_sec=round(subscription.idle_for(now_value), 1),
                )
            if not members:
                self._connections.pop(key, None)
        if closed:
            increment_metric("sse_idle_connections_closed", closed)
            self._refresh_gauges()
        return closed

    def cleanup_stale_snapshots(self, ttl_sec: float, now_ts: float | None = None) -> int:
        now_value = float(now_ts if now_ts is not None else self._clock())
        cutoff = now_value - float(ttl_sec)
        removed = 0
        for key, updated_at in list(self._snapshot_updated_at.items()):
            if key in self._connections:
                continue
            if updated_at <= cutoff:
                self._snapshots.pop(key, None)
                self._snapshot_updated_at.pop(key, None)
                removed += 1
        if removed:
            increment_metric("metrics_snapshots_expired", removed)
        return removed

    def close_all(self) -> int:
        closed = 0
        for members in list(self._connections.values()):
            for subscription in list(members):
                subscription.close()
                closed += 1
        self._connections.clear()
        self._refresh_gauges()
        return closed

    def get_snapshot(self, session_id: str) -> dict | None:
        current = self._snapshots.get(normalize_session_id(session_id))
        return copy.deepcopy(current) if current is not None else None

    def connection_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._connections.get(normalize_session_id(session_id), ()))
        return sum(len(members) for members in self._connections.values())

    def has_session(self, session_id: str) -> bool:
        key = normalize_session_id(session_id)
        return key in self._connections or key in self._snapshots

    def session_count(self) -> int:
        return len(set(self._connections) | set(self._snapshots))

    def stats(self) -> dict:
        return {
            "sessions": self.session_count(),
            "streaming_sessions": len(self._connections),
            "connections": self.connection_count(),
            "snapshots": len(self._snapshots),
        }
