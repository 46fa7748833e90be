from pydantic import BaseModel
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional


class ConfidenceCurve(BaseModel):
    """min(cap, base + min(x / saturation, inner_cap) * scale), clamped to [0, 1]."""

    cap: float
    base: float
    scale: float
    saturation: float
    inner_cap: Optional[float] = None

    def score(self, observed: float) -> float:
        ratio = observed / self.saturation
        if self.inner_cap is not None:
            ratio = min(ratio, self.inner_cap)
        return max(0.0, min(self.cap, self.base + ratio * self.scale, 1.0))


class AnalyzerTuning(BaseModel):
    peak_hours: ConfidenceCurve = ConfidenceCurve(cap=0.9, base=0.3, scale=0.6, saturation=24)
    task_patterns: ConfidenceCurve = ConfidenceCurve(cap=0.85, base=0.4, scale=0.45, saturation=30)
    collaboration_style: ConfidenceCurve = ConfidenceCurve(
        cap=0.8, base=0.5, scale=1.0, saturation=20, inner_cap=0.3
    )
    feature_usage: ConfidenceCurve = ConfidenceCurve(cap=0.9, base=0.6, scale=0.3, saturation=100)
    productivity_trends: ConfidenceCurve = ConfidenceCurve(cap=0.85, base=0.5, scale=0.35, saturation=8)
    focus_patterns: ConfidenceCurve = ConfidenceCurve(cap=0.8, base=0.4, scale=0.4, saturation=20)
    workload_distribution: ConfidenceCurve = ConfidenceCurve(cap=0.8, base=0.5, scale=0.3, saturation=30)
    procrastination_patterns: ConfidenceCurve = ConfidenceCurve(
        cap=0.75, base=0.4, scale=0.35, saturation=30
    )

    min_hour_events: int = 3
    peak_hour_fraction: float = 0.25
    session_gap_minutes: float = 30
    focus_min_minutes: float = 30
    focus_min_events: int = 5
    focus_cap_minutes: float = 120
    insufficient_trend_confidence: float = 0.3
    capacity_confidence: float = 0.8


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./insights.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    NATS_URL: str = "nats://localhost:4222"
    LOG_LEVEL: str = "INFO"

    EVENT_BATCH_SIZE: int = 100
    FLUSH_INTERVAL_SECONDS: float = 30.0
    INBOX_MAX_SIZE: int = 10000
    COUNTER_TTL_SECONDS: int = 7 * 24 * 60 * 60
    PERF_SAMPLE_LIMIT: int = 1000
    PERF_SAMPLE_TTL_SECONDS: int = 24 * 60 * 60
    SUBSCRIBER_QUEUE_SIZE: int = 100

    DASHBOARD_CACHE_TTL_SECONDS: int = 300
    INSIGHTS_CACHE_TTL_SECONDS: int = 60 * 60
    PREDICTION_CACHE_TTL_SECONDS: int = 60 * 60

    ANALYSIS_WINDOW_DAYS: int = 30
    INSIGHT_CONFIDENCE_THRESHOLD: float = 0.6
    PREDICTION_TIMEOUT_SECONDS: float = 5.0
    INSIGHT_TRIGGER_INTERVAL_SECONDS: float = 60 * 60
    ANALYZER_TUNING: AnalyzerTuning = AnalyzerTuning()

    class Config:
        env_file = Path(__file__).parent.parent / ".env"
        env_nested_delimiter = "__"
        case_sensitive = True


settings = Settings()
