from datetime import datetime, date, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class EventCategory(str, Enum):
    KANBAN = "kanban"
    WIKI = "wiki"
    MEMORY = "memory"
    AUTH = "auth"
    DASHBOARD = "dashboard"
    SYSTEM = "system"


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    ACTION = "action"
    FEATURE_USE = "feature_use"
    ERROR = "error"
    PERFORMANCE = "performance"


class EventAction(str, Enum):
    """Actions the aggregator and the analyzers count. Producers may send any other action."""

    CREATE_TASK = "create_task"
    COMPLETE_TASK = "complete_task"
    CREATE_PAGE = "create_page"
    STORE_MEMORY = "store_memory"
    SEARCH = "search"


class MetricType(str, Enum):
    API_RESPONSE = "api_response"
    DB_QUERY = "db_query"
    WEBSOCKET = "websocket"
    PAGE_LOAD = "page_load"
    FEATURE_INTERACTION = "feature_interaction"


class InsightType(str, Enum):
    PEAK_HOURS = "peak_hours"
    TASK_PATTERNS = "task_patterns"
    COLLABORATION_STYLE = "collaboration_style"
    FEATURE_USAGE = "feature_usage"
    PRODUCTIVITY_TRENDS = "productivity_trends"
    FOCUS_PATTERNS = "focus_patterns"
    WORKLOAD_DISTRIBUTION = "workload_distribution"
    PROCRASTINATION_PATTERNS = "procrastination_patterns"
    TASK_COMPLETION_PREDICTION = "task_completion_prediction"
    PRODUCTIVITY_FORECAST = "productivity_forecast"
    WORKLOAD_CAPACITY = "workload_capacity"


class EventProperties(BaseModel):
    """Free-form event properties with typed access to the keys the engine reads."""

    model_config = ConfigDict(extra="allow")

    duration: Optional[float] = Field(None, ge=0, description="Time spent, in minutes")
    complexity: Optional[int] = Field(None, ge=1, le=10)
    task_id: Optional[str] = None

    @field_validator("duration", "complexity", mode="wrap")
    @classmethod
    def drop_invalid_value(cls, value, handler):
        """An out-of-range reading is discarded, not the whole event."""
        try:
            return handler(value)
        except ValidationError:
            return None


class EventCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: Optional[str] = Field(None, max_length=64)
    session_id: str = Field(..., max_length=255)
    event_type: EventType = EventType.ACTION
    event_category: EventCategory
    event_action: str = Field(..., min_length=1, max_length=100)
    event_label: Optional[str] = Field(None, max_length=255)
    properties: EventProperties = Field(default_factory=EventProperties)
    page_url: Optional[str] = Field(None, max_length=500)
    load_time: Optional[int] = Field(None, gt=0)
    board_id: Optional[str] = None
    page_id: Optional[str] = None
    memory_id: Optional[str] = None
    created_at: Optional[datetime] = None


class TrackedEvent(EventCreate):
    """An event once accepted by the buffer: identified, timestamped and immutable."""

    model_config = ConfigDict(use_enum_values=True, frozen=True, from_attributes=True)

    id: UUID
    created_at: datetime

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump(exclude={"properties"})
        row["properties"] = self.properties.model_dump(exclude_none=True)
        return row

    @classmethod
    def from_row(cls, row) -> "TrackedEvent":
        """Load a stored event. SQLite hands back naive datetimes, which are stored as UTC."""
        event = cls.model_validate(row)
        if event.created_at.tzinfo is None:
            event = event.model_copy(update={"created_at": event.created_at.replace(tzinfo=timezone.utc)})
        return event


class PerformanceMetricCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    metric_type: MetricType
    endpoint: Optional[str] = Field(None, max_length=255)
    response_time_ms: int = Field(..., ge=0)
    start_time: datetime
    end_time: datetime
    method: Optional[str] = Field(None, max_length=10)
    status_code: Optional[int] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None


class DailyMetrics(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    user_id: str
    date: date
    tasks_created: int = 0
    tasks_completed: int = 0
    wiki_pages_created: int = 0
    memories_stored: int = 0
    searches_performed: int = 0
    actions_performed: int = 0


class InsightPattern(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    type: InsightType
    confidence: float = Field(..., ge=0.0, le=1.0)
    data: Dict[str, Any] = Field(default_factory=dict)
    recommendation: Optional[str] = None


class ProductivityInsight(BaseModel):
    model_config = ConfigDict(use_enum_values=True, from_attributes=True)

    user_id: str
    insight_type: InsightType
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    recommendation: Optional[str] = None
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    data_points: Dict[str, Any] = Field(default_factory=dict)
    time_period_start: Optional[datetime] = None
    time_period_end: Optional[datetime] = None
    is_active: bool = True
    is_read: bool = False
