from app.metrics.aggregator import SessionMetricsAggregator
from app.metrics.client import RealtimeMetricsClient, RealtimeMetricsError
from app.metrics.export import metrics_summary, metrics_to_csv, metrics_to_json
from app.metrics.models import EMOTION_KEYS, EngagementBreakdown, FacialSample, MetricSnapshot, MoodDataPoint
from app.metrics.publisher import SnapshotPublisher
from app.metrics.store import LocalSessionMetricsStore

__all__ = [
    "EMOTION_KEYS",
    "EngagementBreakdown",
    "FacialSample",
    "LocalSessionMetricsStore",
    "MetricSnapshot",
    "MoodDataPoint",
    "RealtimeMetricsClient",
    "RealtimeMetricsError",
    "SessionMetricsAggregator",
    "SnapshotPublisher",
    "metrics_summary",
    "metrics_to_csv",
    "metrics_to_json",
]
