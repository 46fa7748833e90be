import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    UUID,
)
from shared.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    event_category = Column(String(50), nullable=False, index=True)
    event_action = Column(String(100), nullable=False)
    event_label = Column(String(255), nullable=True)
    properties = Column(JSON, nullable=False, default=dict)
    page_url = Column(String(500), nullable=True)
    load_time = Column(Integer, nullable=True)
    board_id = Column(String(64), nullable=True)
    page_id = Column(String(64), nullable=True)
    memory_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class PerformanceMetric(Base):
    __tablename__ = "performance_metrics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metric_type = Column(String(50), nullable=False, index=True)
    endpoint = Column(String(255), nullable=True)
    response_time_ms = Column(Integer, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    method = Column(String(10), nullable=True)
    status_code = Column(Integer, nullable=True)
    user_id = Column(String(64), nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class UserDailyMetrics(Base):
    __tablename__ = "user_daily_metrics"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_user_daily_metrics_user_date"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    tasks_created = Column(Integer, nullable=False, default=0)
    tasks_completed = Column(Integer, nullable=False, default=0)
    wiki_pages_created = Column(Integer, nullable=False, default=0)
    memories_stored = Column(Integer, nullable=False, default=0)
    searches_performed = Column(Integer, nullable=False, default=0)
    actions_performed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ProductivityInsight(Base):
    __tablename__ = "productivity_insights"
    __table_args__ = (
        UniqueConstraint("user_id", "insight_type", name="uq_productivity_insights_user_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    insight_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    recommendation = Column(Text, nullable=True)
    confidence_score = Column(Float, nullable=False, default=0.0)
    data_points = Column(JSON, nullable=False, default=dict)
    time_period_start = Column(DateTime(timezone=True), nullable=True)
    time_period_end = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
