from __future__ import annotations

from dataclasses import dataclass, field


EMOTION_KEYS = ("neutral", "happy", "sad", "angry", "fearful", "disgusted", "surprised")


def empty_emotions() -> dict[str, float]:
    return {key: 0.0 for key in EMOTION_KEYS}


@dataclass(frozen=True)
class FacialSample:
    """One facial-analysis reading, already clamped to valid ranges."""

    emotions: dict[str, float]
    eye_contact: bool
    confidence: float
    timestamp: int
    in_response: bool = False
    head_pose: dict[str, float] | None = None

    def to_dict(self) -> dict:
        payload = {
            "emotions": dict(self.emotions),
            "eyeContact": self.eye_contact,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "inResponse": self.in_response,
        }
        if self.head_pose is not None:
            payload["headPose"] = dict(self.head_pose)
        return payload


@dataclass(frozen=True)
class MoodDataPoint:
    timestamp: int
    dominant_emotion: str
    confidence: float
    emotions: dict[str, float]

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "dominantEmotion": self.dominant_emotion,
            "confidence": self.confidence,
            "emotions": dict(self.emotions),
        }


@dataclass(frozen=True)
class EngagementBreakdown:
    eye_contact_score: float = 0.0
    emotional_stability: float = 0.0
    response_consistency: float = 0.0
    overall_engagement: float = 0.0

    def to_dict(self) -> dict:
        return {
            "eyeContactScore": self.eye_contact_score,
            "emotionalStability": self.emotional_stability,
            "responseConsistency": self.response_consistency,
            "overallEngagement": self.overall_engagement,
        }


@dataclass(frozen=True)
class MetricSnapshot:
    # ---------- final interview metrics ----------
    eye_contact_percentage: float = 0.0
    average_confidence: float = 0.0
    response_quality: float = 0.0
    overall_engagement: float = 0.0
    mood_timeline: tuple[MoodDataPoint, ...] = ()

    # ---------- live dashboard fields ----------
    engagement_score: float = 0.0
    emotional_stability: float = 0.0
    dominant_emotion: str = "neutral"
    current_mood: str = "neutral"
    mood_confidence: float = 0.0
    emotion_distribution: dict[str, float] = field(default_factory=empty_emotions)
    total_data_points: int = 0
    session_duration: int = 0
    response_count: int = 0
    average_response_duration: float = 0.0
    response_in_progress: bool = False

    def to_dict(self) -> dict:
        return {
            "eyeContactPercentage": self.eye_contact_percentage,
            "averageConfidence": self.average_confidence,
            "responseQuality": self.response_quality,
            "overallEngagement": self.overall_engagement,
            "moodTimeline": [point.to_dict() for point in self.mood_timeline],
            "engagementScore": self.engagement_score,
            "emotionalStability": self.emotional_stability,
            "dominantEmotion": self.dominant_emotion,
            "currentMood": self.current_mood,
            "moodConfidence": self.mood_confidence,
            "emotionDistribution": dict(self.emotion_distribution),
            "totalDataPoints": self.total_data_points,
            "sessionDuration": self.session_duration,
            "responseCount": self.response_count,
            "averageResponseDuration": self.average_response_duration,
            "responseInProgress": self.response_in_progress,
        }
