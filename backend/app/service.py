"""Application facade wiring the buffer, the insights engine and the caches together."""

import asyncio
import hashlib
import logging
from collections import Counter, defaultdict
from datetime import datetime, date, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from pydantic import TypeAdapter
from redis.asyncio import Redis
from redis.exceptions import RedisError

from backend.app import cache, crud, schemas
from backend.app.analyzers import week_start
from backend.app.buffer import EventBuffer, EventInput
from backend.app.insights import InsightsEngine
from backend.app.predictive import (
    HeuristicPredictiveAnalytics,
    PredictiveAnalytics,
    ProductivityForecast,
    TaskCompletionPrediction,
    WorkloadCapacityPrediction,
)
from backend.app.realtime import Broadcaster, Subscription
from shared.config import settings
from shared.messaging import DeadLetterSink
from shared.schemas import PerformanceMetricCreate, ProductivityInsight

logger = logging.getLogger(__name__)

RANGE_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}

_insight_list = TypeAdapter(List[ProductivityInsight])


def resolve_time_range(
    time_range: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """Turn a named range into concrete bounds. A custom range without both ends falls back to a week."""
    now = now or datetime.now(timezone.utc)
    if time_range == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0), now
    if time_range == "custom" and start and end:
        return start, end
    return now - timedelta(days=RANGE_DAYS.get(time_range, 7)), now


def bucket_start(moment: datetime, group_by: str) -> datetime:
    if group_by == "hour":
        return moment.replace(minute=0, second=0, microsecond=0)
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if group_by == "week":
        return day - (moment.date() - week_start(moment.date()))
    if group_by == "month":
        return day.replace(day=1)
    return day


def activity_streak(active_days: Set[date], today: date) -> int:
    """Consecutive active days ending today, or yesterday when today has no activity yet."""
    day = today if today in active_days else today - timedelta(days=1)
    streak = 0
    while day in active_days:
        streak += 1
        day -= timedelta(days=1)
    return streak


class AnalyticsService:
    def __init__(
        self,
        session_factory,
        redis: Optional[Redis] = None,
        predictive: Optional[PredictiveAnalytics] = None,
        dead_letter: Optional[DeadLetterSink] = None,
        broadcaster: Optional[Broadcaster] = None,
        insight_threshold: float = settings.INSIGHT_CONFIDENCE_THRESHOLD,
        batch_size: int = settings.EVENT_BATCH_SIZE,
        flush_interval: float = settings.FLUSH_INTERVAL_SECONDS,
    ):
        self._session_factory = session_factory
        self._redis = redis
        self.broadcaster = broadcaster or Broadcaster()
        self.predictive = predictive or HeuristicPredictiveAnalytics(session_factory, redis)
        self.buffer = EventBuffer(
            session_factory,
            redis=redis,
            broadcaster=self.broadcaster,
            batch_size=batch_size,
            flush_interval=flush_interval,
            dead_letter=dead_letter,
        )
        self.engine = InsightsEngine(session_factory, self.predictive, threshold=insight_threshold)
        self._background: Set[asyncio.Task] = set()

    async def start(self) -> None:
        await self.buffer.start()

    async def stop(self) -> None:
        await self.buffer.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.broadcaster.close()

    async def track_event(self, event: EventInput) -> None:
        await self.buffer.track_event(event)

    async def track_event_batch(self, events: List[EventInput]) -> None:
        await self.buffer.track_event_batch(events)

    async def flush(self) -> int:
        return await self.buffer.flush()

    def subscribe(self, user_id: Optional[str] = None) -> Subscription:
        return self.broadcaster.subscribe(user_id)

    async def record_performance_metric(self, metric: PerformanceMetricCreate) -> None:
        try:
            await asyncio.to_thread(self._store_performance_metric, metric)
        except Exception as e:
            logger.error(f"Error recording performance metric: {e}")

        if self._redis is not None:
            try:
                await cache.push_performance_sample(self._redis, metric)
            except RedisError as e:
                logger.error(f"Error caching performance sample: {e}")

    def _store_performance_metric(self, metric: PerformanceMetricCreate) -> None:
        db = self._session_factory()
        try:
            crud.insert_performance_metric(db, metric)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def get_user_dashboard(
        self,
        user_id: str,
        time_range: str = "week",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> schemas.DashboardMetrics:
        cache_key = f"dashboard:{user_id}:{time_range}"
        if time_range == "custom":
            cache_key += f":{start}:{end}"
        if self._redis is not None:
            cached = await cache.get_cached_json(self._redis, cache_key)
            if cached:
                return schemas.DashboardMetrics.model_validate(cached)

        range_start, range_end = resolve_time_range(time_range, start, end)
        dashboard = await asyncio.to_thread(self._build_dashboard, user_id, time_range, range_start, range_end)
        dashboard.system = await self._system_metrics(dashboard.system)

        if self._redis is not None:
            await cache.set_cached_json(
                self._redis, cache_key, dashboard.model_dump(mode="json"), settings.DASHBOARD_CACHE_TTL_SECONDS
            )
        return dashboard

    def _build_dashboard(
        self, user_id: str, time_range: str, start: datetime, end: datetime
    ) -> schemas.DashboardMetrics:
        today = end.date()
        db = self._session_factory()
        try:
            summary = crud.summarize_user_metrics(db, user_id, start.date())
            daily = crud.get_user_daily_metrics(db, user_id, today - timedelta(days=365), today)
            points = crud.get_event_points(db, start, end, user_id=user_id)
            insights = crud.get_active_insights(db, user_id, limit=5)
            tracked_users = crud.count_tracked_users(db)
        finally:
            db.close()

        total_tasks = int(summary.total_tasks)
        completed_tasks = int(summary.completed_tasks)

        def completed_since(since: date) -> int:
            return sum(row.tasks_completed for row in daily if row.date >= since)

        hours = Counter(created_at.hour for created_at, _ in points)
        categories = Counter(category for _, category in points)

        return schemas.DashboardMetrics(
            user_id=user_id,
            time_range=time_range,
            start=start,
            end=end,
            user=schemas.UserSummary(
                total_tasks=total_tasks,
                completed_tasks=completed_tasks,
                completion_rate=round(completed_tasks / total_tasks * 100, 1) if total_tasks else 0.0,
                wiki_pages=int(summary.wiki_pages),
                memories=int(summary.memories),
                active_days=int(summary.active_days),
            ),
            productivity=schemas.ProductivityMetrics(
                tasks_completed_today=completed_since(today),
                tasks_completed_week=completed_since(today - timedelta(days=6)),
                tasks_completed_month=completed_since(today - timedelta(days=29)),
                streak_days=activity_streak({row.date for row in daily if row.actions_performed > 0}, today),
                peak_hours=[schemas.HourCount(hour=hour, count=count) for hour, count in hours.most_common(4)],
                top_categories=[
                    schemas.CategoryCount(category=category, count=count)
                    for category, count in categories.most_common(3)
                ],
            ),
            system=schemas.SystemMetrics(tracked_users=tracked_users),
            insights=[ProductivityInsight.model_validate(row) for row in insights],
        )

    async def _system_metrics(self, system: schemas.SystemMetrics) -> schemas.SystemMetrics:
        if self._redis is None:
            return system
        try:
            active_users = await cache.active_user_ids(self._redis)
            samples = await cache.get_performance_samples(self._redis)
        except RedisError as e:
            logger.warning(f"Real-time system metrics unavailable: {e}")
            return system

        response_times = [sample["response_time"] for sample in samples if sample.get("response_time") is not None]
        errors = sum(1 for sample in samples if (sample.get("status_code") or 0) >= 400)
        return system.model_copy(update={
            "active_users_today": len(active_users),
            "avg_response_time_ms": sum(response_times) / len(response_times) if response_times else 0.0,
            "error_rate": errors / len(samples) if samples else 0.0,
        })

    async def get_time_series_data(self, query: schemas.AnalyticsQuery) -> List[schemas.TimeSeriesData]:
        digest = hashlib.sha1(query.model_dump_json().encode()).hexdigest()
        cache_key = f"timeseries:{digest}"
        if self._redis is not None:
            cached = await cache.get_cached_json(self._redis, cache_key)
            if cached is not None:
                return [schemas.TimeSeriesData.model_validate(item) for item in cached]

        start, end = resolve_time_range(query.time_range, query.start_date, query.end_date)
        series = await asyncio.to_thread(self._build_time_series, query, start, end)

        if self._redis is not None:
            await cache.set_cached_json(
                self._redis,
                cache_key,
                [item.model_dump(mode="json") for item in series],
                settings.DASHBOARD_CACHE_TTL_SECONDS,
            )
        return series

    def _build_time_series(
        self, query: schemas.AnalyticsQuery, start: datetime, end: datetime
    ) -> List[schemas.TimeSeriesData]:
        db = self._session_factory()
        try:
            points = crud.get_event_points(
                db,
                start,
                end,
                user_id=query.user_id,
                event_type=query.event_type.value if query.event_type else None,
                event_category=query.event_category.value if query.event_category else None,
            )
        finally:
            db.close()

        buckets: Dict[str, Counter] = defaultdict(Counter)
        for created_at, category in points:
            buckets[category][bucket_start(created_at, query.group_by)] += 1

        return [
            schemas.TimeSeriesData(
                metric=category,
                data=[
                    schemas.TimeSeriesPoint(timestamp=timestamp, value=count)
                    for timestamp, count in sorted(counts.items())
                ],
            )
            for category, counts in sorted(buckets.items())
        ]

    async def generate_insights(self, user_id: str) -> List[ProductivityInsight]:
        insights = await self.engine.generate_insights(user_id)
        if self._redis is not None:
            await cache.set_cached_json(
                self._redis,
                f"insights:{user_id}",
                [insight.model_dump(mode="json") for insight in insights],
                settings.INSIGHTS_CACHE_TTL_SECONDS,
            )
        return insights

    async def get_insights(self, user_id: str) -> List[ProductivityInsight]:
        if self._redis is not None:
            cached = await cache.get_cached_json(self._redis, f"insights:{user_id}")
            if cached is not None:
                return _insight_list.validate_python(cached)
        return await self.generate_insights(user_id)

    async def get_realtime_metrics(self, user_id: Optional[str] = None) -> schemas.RealtimeMetrics:
        metrics = schemas.RealtimeMetrics(
            user_id=user_id,
            date=datetime.now(timezone.utc).date(),
            pending_events=self.buffer.pending,
            subscribers=self.broadcaster.subscriber_count,
        )
        if self._redis is None:
            return metrics
        try:
            metrics.system_counters = await cache.get_system_counters(self._redis)
            if user_id:
                metrics.user_counters = await cache.get_user_counters(self._redis, user_id)
        except RedisError as e:
            logger.warning(f"Real-time counters unavailable: {e}")
        return metrics

    async def get_task_completion_prediction(
        self, user_id: str, task_id: Optional[str] = None, complexity: Optional[int] = None
    ) -> TaskCompletionPrediction:
        return await self.predictive.predict_task_completion(user_id, task_id, complexity)

    async def get_productivity_forecast(self, user_id: str, days: int = 7) -> ProductivityForecast:
        return await self.predictive.generate_productivity_forecast(user_id, days)

    async def get_workload_capacity_prediction(self, user_id: str) -> WorkloadCapacityPrediction:
        return await self.predictive.predict_workload_capacity(user_id)

    def train_predictive_models(self, user_id: str) -> asyncio.Task:
        """Start training in the background and return immediately."""
        task = asyncio.create_task(self.predictive.train_models(user_id), name=f"train-models-{user_id}")
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task {task.get_name()} failed: {task.exception()}")

    async def trigger_insight_generation(self) -> int:
        """Regenerate insights for every user active today. Returns the number of users refreshed."""
        user_ids = await self._active_users_today()
        refreshed = 0
        for user_id in user_ids:
            try:
                await self.generate_insights(user_id)
                refreshed += 1
            except Exception as e:
                logger.error(f"Error generating insights for {user_id}: {e}")
        logger.info(f"Generated insights for {refreshed}/{len(user_ids)} active users")
        return refreshed

    async def _active_users_today(self) -> List[str]:
        if self._redis is not None:
            try:
                return sorted(await cache.active_user_ids(self._redis))
            except RedisError as e:
                logger.warning(f"Falling back to stored metrics for active users: {e}")

        def query() -> List[str]:
            db = self._session_factory()
            try:
                return crud.get_active_user_ids(db, datetime.now(timezone.utc).date())
            finally:
                db.close()

        return sorted(await asyncio.to_thread(query))
