from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Mapping
from statistics import fmean, pvariance
from typing import Any, Callable

from app.metrics.models import (
    EMOTION_KEYS,
    EngagementBreakdown,
    FacialSample,
    MetricSnapshot,
    MoodDataPoint,
    empty_emotions,
)

logger = logging.getLogger("metrics_aggregator")

RECENT_WINDOW = 10
MAX_ENGAGEMENT_HISTORY = 1000

EYE_CONTACT_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.4
STABILITY_WEIGHT = 0.2

QUALITY_CONFIDENCE_WEIGHT = 0.5
QUALITY_EYE_CONTACT_WEIGHT = 0.3
QUALITY_STABILITY_WEIGHT = 0.2


def _unit(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return max(0.0, min(1.0, number))


def _pick(raw: Mapping, *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _dominant_emotion(scores: Mapping[str, float]) -> str:
    # Strict comparison keeps the earliest key of EMOTION_KEYS on ties.
    best_key = EMOTION_KEYS[0]
    best_value = float(scores.get(best_key, 0.0))
    for key in EMOTION_KEYS[1:]:
        value = float(scores.get(key, 0.0))
        if value > best_value:
            best_key = key
            best_value = value
    return best_key


def _average_emotions(samples: list[FacialSample]) -> dict[str, float]:
    if not samples:
        return empty_emotions()
    count = float(len(samples))
    return {key: sum(s.emotions[key] for s in samples) / count for key in EMOTION_KEYS}


def _emotional_stability(confidences: list[float]) -> float:
    if not confidences:
        return 0.0
    if len(confidences) < 2:
        return 1.0
    return max(0.0, 1.0 - pvariance(confidences) * 2.0)


def _eye_contact_ratio(samples: list[FacialSample]) -> float:
    if not samples:
        return 0.0
    return sum(1 for s in samples if s.eye_contact) / float(len(samples))


def _sample_engagement(sample: FacialSample) -> float:
    emotions = sample.emotions
    positive = emotions["happy"] + emotions["surprised"]
    negative = emotions["sad"] + emotions["angry"] + emotions["fearful"]
    emotional = max(0.0, positive - negative)
    eye = 1.0 if sample.eye_contact else 0.0
    return eye * EYE_CONTACT_WEIGHT + sample.confidence * CONFIDENCE_WEIGHT + emotional * STABILITY_WEIGHT


class SessionMetricsAggregator:
    """Reduces facial-analysis samples for one interview session.

    Samples are accepted as loosely shaped mappings (camelCase or snake_case
    keys). Out-of-range scores are clamped to [0, 1] and unusable fields fall
    back to zero, so feeding bad data never raises. `get_snapshot` does not
    mutate state.
    """

    def __init__(self, session_id: str = "", clock: Callable[[], float] | None = None):
        self.session_id = str(session_id or "")
        self._clock = clock or time.time
        self._samples: list[FacialSample] = []
        self._eye_contact_count = 0
        self._confidence_total = 0.0
        self._emotion_totals = empty_emotions()
        self._engagement_history: deque[dict] = deque(maxlen=MAX_ENGAGEMENT_HISTORY)
        self._response_started_at: float | None = None
        self._response_durations: list[float] = []

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def response_in_progress(self) -> bool:
        return self._response_started_at is not None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _normalize(self, raw: Any) -> FacialSample | None:
        if isinstance(raw, FacialSample):
            raw = raw.to_dict()
        if not isinstance(raw, Mapping):
            logger.debug("ignoring non-mapping sample | session_id=%s type=%s", self.session_id, type(raw).__name__)
            return None

        raw_emotions = raw.get("emotions")
        if not isinstance(raw_emotions, Mapping):
            raw_emotions = {}
        emotions = {key: _unit(raw_emotions.get(key)) or 0.0 for key in EMOTION_KEYS}

        eye_value = _pick(raw, "eyeContact", "eye_contact")
        eye_contact = bool(eye_value) if isinstance(eye_value, (bool, int, float)) else False

        confidence = _unit(_pick(raw, "confidence")) or 0.0

        try:
            timestamp = int(float(_pick(raw, "timestamp")))
        except (TypeError, ValueError, OverflowError):
            timestamp = self._now_ms()

        head_pose = None
        raw_pose = _pick(raw, "headPose", "head_pose")
        if isinstance(raw_pose, Mapping):
            head_pose = {}
            for axis in ("pitch", "yaw", "roll"):
                try:
                    head_pose[axis] = float(raw_pose.get(axis))
                except (TypeError, ValueError):
                    continue

        return FacialSample(
            emotions=emotions,
            eye_contact=eye_contact,
            confidence=confidence,
            timestamp=timestamp,
            in_response=self.response_in_progress,
            head_pose=head_pose,
        )

    def add_sample(self, sample: Any) -> FacialSample | None:
        normalized = self._normalize(sample)
        if normalized is None:
            return None

        self._samples.append(normalized)
        if normalized.eye_contact:
            self._eye_contact_count += 1
        self._confidence_total += normalized.confidence
        for key in EMOTION_KEYS:
            self._emotion_totals[key] += normalized.emotions[key]

        self._engagement_history.append({
            "timestamp": normalized.timestamp,
            "eyeContact": normalized.eye_contact,
            "dominantEmotion": _dominant_emotion(normalized.emotions),
            "emotionConfidence": normalized.confidence,
            "engagementLevel": _sample_engagement(normalized),
            "responseInProgress": normalized.in_response,
        })
        return normalized

    def start_response(self) -> None:
        self._response_started_at = self._clock()

    def end_response(self) -> float | None:
        if self._response_started_at is None:
            return None
        duration = max(0.0, self._clock() - self._response_started_at)
        self._response_durations.append(duration)
        self._response_started_at = None
        return duration

    def _response_quality(self) -> float:
        subset = [s for s in self._samples if s.in_response] or self._samples
        if not subset:
            return 0.0
        confidences = [s.confidence for s in subset]
        return (
            fmean(confidences) * QUALITY_CONFIDENCE_WEIGHT
            + _eye_contact_ratio(subset) * QUALITY_EYE_CONTACT_WEIGHT
            + _emotional_stability(confidences) * QUALITY_STABILITY_WEIGHT
        )

    def get_snapshot(self) -> MetricSnapshot:
        response_count = len(self._response_durations)
        average_response_duration = round(fmean(self._response_durations), 3) if response_count else 0.0

        count = len(self._samples)
        if count == 0:
            return MetricSnapshot(
                response_count=response_count,
                average_response_duration=average_response_duration,
                response_in_progress=self.response_in_progress,
            )

        eye_ratio = self._eye_contact_count / float(count)
        average_confidence = self._confidence_total / float(count)
        stability = _emotional_stability([s.confidence for s in self._samples])
        distribution = {key: self._emotion_totals[key] / float(count) for key in EMOTION_KEYS}

        recent = self._samples[-RECENT_WINDOW:]
        timestamps = [s.timestamp for s in self._samples]

        return MetricSnapshot(
            eye_contact_percentage=eye_ratio * 100.0,
            average_confidence=average_confidence,
            response_quality=self._response_quality(),
            overall_engagement=(eye_ratio + stability * 2.0) / 3.0,
            mood_timeline=tuple(self.get_mood_timeline()),
            engagement_score=(
                eye_ratio * EYE_CONTACT_WEIGHT
                + average_confidence * CONFIDENCE_WEIGHT
                + stability * STABILITY_WEIGHT
            ) * 100.0,
            emotional_stability=stability,
            dominant_emotion=_dominant_emotion(distribution),
            current_mood=_dominant_emotion(_average_emotions(recent)),
            mood_confidence=fmean(s.confidence for s in recent),
            emotion_distribution=distribution,
            total_data_points=count,
            session_duration=int((max(timestamps) - min(timestamps)) // 1000),
            response_count=response_count,
            average_response_duration=average_response_duration,
            response_in_progress=self.response_in_progress,
        )

    def get_mood_timeline(self) -> list[MoodDataPoint]:
        return [
            MoodDataPoint(
                timestamp=s.timestamp,
                dominant_emotion=_dominant_emotion(s.emotions),
                confidence=s.confidence,
                emotions=dict(s.emotions),
            )
            for s in self._samples
        ]

    def get_realtime_metrics(self) -> dict:
        snapshot = self.get_snapshot()
        return {
            "eyeContactPercentage": snapshot.eye_contact_percentage,
            "currentMood": snapshot.current_mood,
            "moodConfidence": snapshot.mood_confidence,
            "engagementScore": snapshot.engagement_score,
            "responseQuality": snapshot.response_quality,
            "averageConfidence": snapshot.average_confidence,
            "sessionDuration": snapshot.session_duration,
            "totalDataPoints": snapshot.total_data_points,
        }

    def get_engagement_metrics(self) -> EngagementBreakdown:
        if not self._samples:
            return EngagementBreakdown()
        eye_contact_score = _eye_contact_ratio(self._samples) * 100.0
        stability = _emotional_stability([s.confidence for s in self._samples])
        # Response consistency has no separate signal yet and mirrors stability.
        consistency = stability
        return EngagementBreakdown(
            eye_contact_score=eye_contact_score,
            emotional_stability=stability,
            response_consistency=consistency,
            overall_engagement=(eye_contact_score + stability * 100.0 + consistency * 100.0) / 3.0,
        )

    def export_data(self) -> dict:
        return {
            "sessionId": self.session_id,
            "facialDataHistory": [s.to_dict() for s in self._samples],
            "metricsSnapshots": list(self._engagement_history),
            "responseDurations": list(self._response_durations),
            "finalMetrics": self.get_snapshot().to_dict(),
            "engagementMetrics": self.get_engagement_metrics().to_dict(),
        }

    def reset(self) -> None:
        self._samples = []
        self._eye_contact_count = 0
        self._confidence_total = 0.0
        self._emotion_totals = empty_emotions()
        self._engagement_history.clear()
        self._response_started_at = None
        self._response_durations = []
