from datetime import datetime, date
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from shared.models import (
    AnalyticsEvent,
    PerformanceMetric,
    ProductivityInsight,
    UserDailyMetrics,
    utcnow,
)
from shared.schemas import PerformanceMetricCreate, TrackedEvent
from shared import schemas

DAILY_COUNTER_COLUMNS = (
    "tasks_created",
    "tasks_completed",
    "wiki_pages_created",
    "memories_stored",
    "searches_performed",
    "actions_performed",
)


def _upsert_insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert is not supported for dialect {dialect}")


def insert_events(db: Session, events: List[TrackedEvent]) -> int:
    if not events:
        return 0
    db.execute(insert(AnalyticsEvent), [event.to_row() for event in events])
    return len(events)


def increment_daily_metrics(db: Session, user_id: str, day: date, counts: Dict[str, int]) -> None:
    values = {column: counts.get(column, 0) for column in DAILY_COUNTER_COLUMNS}
    stmt = _upsert_insert(db, UserDailyMetrics).values(user_id=user_id, date=day, **values)
    increments = {
        column: getattr(UserDailyMetrics, column) + getattr(stmt.excluded, column)
        for column in DAILY_COUNTER_COLUMNS
    }
    increments["updated_at"] = utcnow()
    stmt = stmt.on_conflict_do_update(index_elements=["user_id", "date"], set_=increments)
    db.execute(stmt)


def insert_performance_metric(db: Session, metric: PerformanceMetricCreate) -> PerformanceMetric:
    row = PerformanceMetric(
        metric_type=metric.metric_type,
        endpoint=metric.endpoint,
        response_time_ms=metric.response_time_ms,
        start_time=metric.start_time,
        end_time=metric.end_time,
        method=metric.method,
        status_code=metric.status_code,
        user_id=metric.user_id,
        details=metric.metadata,
        error_message=metric.error_message,
    )
    db.add(row)
    return row


def get_user_events(
    db: Session,
    user_id: str,
    start: datetime,
    end: datetime,
    event_types: Optional[List[str]] = None,
) -> List[AnalyticsEvent]:
    query = db.query(AnalyticsEvent).filter(
        AnalyticsEvent.user_id == user_id,
        AnalyticsEvent.created_at >= start,
        AnalyticsEvent.created_at <= end,
    )
    if event_types:
        query = query.filter(AnalyticsEvent.event_type.in_(event_types))
    return query.order_by(AnalyticsEvent.created_at).all()


def get_user_daily_metrics(
    db: Session, user_id: str, from_date: date, to_date: date
) -> List[UserDailyMetrics]:
    return db.query(UserDailyMetrics).filter(
        UserDailyMetrics.user_id == user_id,
        UserDailyMetrics.date >= from_date,
        UserDailyMetrics.date <= to_date,
    ).order_by(
        UserDailyMetrics.date
    ).all()


def upsert_insight(db: Session, insight: schemas.ProductivityInsight) -> None:
    stmt = _upsert_insert(db, ProductivityInsight).values(
        user_id=insight.user_id,
        insight_type=insight.insight_type,
        title=insight.title,
        description=insight.description,
        recommendation=insight.recommendation,
        confidence_score=insight.confidence_score,
        data_points=insight.data_points,
        time_period_start=insight.time_period_start,
        time_period_end=insight.time_period_end,
        is_active=insight.is_active,
        is_read=insight.is_read,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "insight_type"],
        set_={
            "title": stmt.excluded.title,
            "description": stmt.excluded.description,
            "recommendation": stmt.excluded.recommendation,
            "confidence_score": stmt.excluded.confidence_score,
            "data_points": stmt.excluded.data_points,
            "time_period_start": stmt.excluded.time_period_start,
            "time_period_end": stmt.excluded.time_period_end,
            "updated_at": utcnow(),
        },
    )
    db.execute(stmt)


def get_active_insights(db: Session, user_id: str, limit: int = 5) -> List[ProductivityInsight]:
    return db.query(ProductivityInsight).filter(
        ProductivityInsight.user_id == user_id,
        ProductivityInsight.is_active.is_(True),
    ).order_by(
        ProductivityInsight.updated_at.desc()
    ).limit(limit).all()


def summarize_user_metrics(db: Session, user_id: str, from_date: date):
    return db.query(
        func.coalesce(func.sum(UserDailyMetrics.tasks_created), 0).label("total_tasks"),
        func.coalesce(func.sum(UserDailyMetrics.tasks_completed), 0).label("completed_tasks"),
        func.coalesce(func.sum(UserDailyMetrics.wiki_pages_created), 0).label("wiki_pages"),
        func.coalesce(func.sum(UserDailyMetrics.memories_stored), 0).label("memories"),
        func.count(UserDailyMetrics.date).label("active_days"),
    ).filter(
        UserDailyMetrics.user_id == user_id,
        UserDailyMetrics.date >= from_date,
    ).one()


def count_tracked_users(db: Session) -> int:
    return db.query(func.count(func.distinct(UserDailyMetrics.user_id))).scalar() or 0


def get_event_points(
    db: Session,
    start: datetime,
    end: datetime,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    event_category: Optional[str] = None,
) -> List[Tuple[datetime, str]]:
    query = db.query(AnalyticsEvent.created_at, AnalyticsEvent.event_category).filter(
        AnalyticsEvent.created_at >= start,
        AnalyticsEvent.created_at <= end,
    )
    if user_id:
        query = query.filter(AnalyticsEvent.user_id == user_id)
    if event_type:
        query = query.filter(AnalyticsEvent.event_type == event_type)
    if event_category:
        query = query.filter(AnalyticsEvent.event_category == event_category)
    return query.order_by(AnalyticsEvent.created_at).all()


def get_active_user_ids(db: Session, day: date) -> List[str]:
    rows = db.query(UserDailyMetrics.user_id).filter(
        UserDailyMetrics.date == day,
        UserDailyMetrics.actions_performed > 0,
    ).distinct().all()
    return [row.user_id for row in rows]
