from __future__ import annotations

import csv
import io
import json
import math
from datetime import datetime, timezone
from typing import Any


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _csv_number(value: Any) -> str:
    number = _safe_float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


def _iso_timestamp(timestamp_ms: Any) -> str:
    moment = datetime.fromtimestamp(_safe_float(timestamp_ms) / 1000.0, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _point_mood(point: dict) -> str:
    return str(point.get("dominantEmotion") or point.get("mood") or "neutral")


def _timeline(metrics: dict) -> list[dict]:
    return [point for point in (metrics.get("moodTimeline") or []) if isinstance(point, dict)]


def metrics_to_json(metrics: dict) -> str:
    return json.dumps(metrics, indent=2, ensure_ascii=False)


def metrics_to_csv(metrics: dict) -> str:
    """Final metrics as a `Metric,Value` table followed by the mood timeline."""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(["Metric", "Value"])
    writer.writerow(["Eye Contact Percentage", _csv_number(metrics.get("eyeContactPercentage"))])
    writer.writerow(["Average Confidence", _csv_number(metrics.get("averageConfidence"))])
    writer.writerow(["Response Quality", _csv_number(metrics.get("responseQuality"))])
    writer.writerow(["Overall Engagement", _csv_number(metrics.get("overallEngagement"))])

    output.write("\n")
    writer.writerow(["Timestamp", "Dominant Emotion", "Confidence"])
    for point in _timeline(metrics):
        writer.writerow([
            _iso_timestamp(point.get("timestamp")),
            _point_mood(point),
            _csv_number(point.get("confidence")),
        ])
    return output.getvalue()


def metrics_summary(session_id: str, metrics: dict) -> dict:
    timeline = _timeline(metrics)

    mood_counts: dict[str, int] = {}
    for point in timeline:
        mood = _point_mood(point)
        mood_counts[mood] = mood_counts.get(mood, 0) + 1

    # First mood to reach the highest count wins.
    dominant_mood, best_count = "neutral", 0
    for mood, count in mood_counts.items():
        if count > best_count:
            dominant_mood, best_count = mood, count

    session_duration = 0
    if timeline:
        first = _safe_float(timeline[0].get("timestamp"))
        last = _safe_float(timeline[-1].get("timestamp"))
        session_duration = _round_half_up((last - first) / 1000.0)

    return {
        "sessionId": session_id,
        "eyeContactPercentage": _round_half_up(_safe_float(metrics.get("eyeContactPercentage"))),
        "averageConfidence": _round_half_up(_safe_float(metrics.get("averageConfidence")) * 100.0),
        "responseQuality": _round_half_up(_safe_float(metrics.get("responseQuality")) * 100.0),
        "overallEngagement": _round_half_up(_safe_float(metrics.get("overallEngagement")) * 100.0),
        "dominantMood": dominant_mood,
        "totalDataPoints": len(timeline),
        "sessionDuration": session_duration,
    }
