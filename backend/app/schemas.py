from pydantic import BaseModel, Field, model_validator
from datetime import datetime, date
from typing import List, Dict, Literal, Optional

from shared.schemas import EventCategory, EventCreate, EventType, ProductivityInsight

TimeRange = Literal["today", "week", "month", "quarter", "year", "custom"]
GroupBy = Literal["hour", "day", "week", "month"]


class EventsIngestRequest(BaseModel):
    events: List[EventCreate] = Field(..., min_length=1, max_length=5000)


class EventsIngestResponse(BaseModel):
    status: str
    message: str
    events_count: int


class StatusResponse(BaseModel):
    status: str
    message: str


class UserSummary(BaseModel):
    total_tasks: int = 0
    completed_tasks: int = 0
    completion_rate: float = Field(0.0, description="Completed tasks as a percentage of created tasks")
    wiki_pages: int = 0
    memories: int = 0
    active_days: int = 0


class HourCount(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    count: int


class CategoryCount(BaseModel):
    category: str
    count: int


class ProductivityMetrics(BaseModel):
    tasks_completed_today: int = 0
    tasks_completed_week: int = 0
    tasks_completed_month: int = 0
    streak_days: int = 0
    peak_hours: List[HourCount] = Field(default_factory=list)
    top_categories: List[CategoryCount] = Field(default_factory=list)


class SystemMetrics(BaseModel):
    tracked_users: int = 0
    active_users_today: int = 0
    avg_response_time_ms: float = 0.0
    error_rate: float = 0.0


class DashboardMetrics(BaseModel):
    user_id: str
    time_range: TimeRange
    start: datetime
    end: datetime
    user: UserSummary
    productivity: ProductivityMetrics
    system: SystemMetrics
    insights: List[ProductivityInsight] = Field(default_factory=list)


class AnalyticsQuery(BaseModel):
    user_id: Optional[str] = None
    time_range: TimeRange = "week"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    group_by: GroupBy = "day"
    event_type: Optional[EventType] = None
    event_category: Optional[EventCategory] = None

    @model_validator(mode="after")
    def check_custom_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class TimeSeriesPoint(BaseModel):
    timestamp: datetime
    value: int


class TimeSeriesData(BaseModel):
    metric: str
    data: List[TimeSeriesPoint]


class TimeSeriesResponse(BaseModel):
    group_by: GroupBy
    series: List[TimeSeriesData]


class InsightsResponse(BaseModel):
    user_id: str
    data: List[ProductivityInsight]


class RealtimeMetrics(BaseModel):
    user_id: Optional[str] = None
    date: date
    user_counters: Dict[str, int] = Field(default_factory=dict)
    system_counters: Dict[str, int] = Field(default_factory=dict)
    pending_events: int = 0
    subscribers: int = 0


class DashboardQueryParams(BaseModel):
    time_range: TimeRange = Field("week", description="today, week, month, quarter, year or custom")
    start_date: Optional[datetime] = Field(None, description="Start of a custom range")
    end_date: Optional[datetime] = Field(None, description="End of a custom range")


class TaskPredictionParams(BaseModel):
    task_id: Optional[str] = None
    complexity: Optional[int] = Field(None, ge=1, le=10, description="Task complexity from 1 to 10")


class ForecastParams(BaseModel):
    days: int = Field(7, ge=1, le=30, description="Number of days to forecast")
