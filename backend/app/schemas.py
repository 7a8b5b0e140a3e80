from typing import Any

from pydantic import BaseModel, ConfigDict


class MoodDataPointModel(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    timestamp: float
    dominantEmotion: str | None = None
    mood: str | None = None
    confidence: float = 0.0
    emotions: dict[str, float] | None = None


class MetricSnapshotModel(BaseModel):
    """Wire shape of a metrics snapshot; every field is optional."""

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    eyeContactPercentage: float = 0.0
    averageConfidence: float = 0.0
    responseQuality: float = 0.0
    overallEngagement: float = 0.0
    moodTimeline: list[MoodDataPointModel] = []
    engagementScore: float = 0.0
    emotionalStability: float = 0.0
    dominantEmotion: str = "neutral"
    currentMood: str = "neutral"
    moodConfidence: float = 0.0
    emotionDistribution: dict[str, float] = {}
    totalDataPoints: int = 0
    sessionDuration: float = 0.0
    responseCount: int = 0
    averageResponseDuration: float = 0.0
    responseInProgress: bool = False

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class RealtimeMetricsUpdate(BaseModel):
    sessionId: str | None = None
    metrics: MetricSnapshotModel | None = None
    type: str | None = None


class RealtimeMetricsUpdateResponse(BaseModel):
    success: bool
    message: str
    activeConnections: int


class StoredMetricsRequest(BaseModel):
    sessionId: str | None = None
    metrics: dict[str, Any] | None = None
