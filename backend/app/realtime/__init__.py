from app.realtime.channel import MetricsBroadcastChannel, normalize_session_id
from app.realtime.subscription import (
    MetricsSubscription,
    SubscriptionBacklogError,
    SubscriptionClosedError,
)

__all__ = [
    "MetricsBroadcastChannel",
    "MetricsSubscription",
    "SubscriptionBacklogError",
    "SubscriptionClosedError",
    "normalize_session_id",
]
