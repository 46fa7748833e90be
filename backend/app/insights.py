import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from backend.app import crud
from backend.app.analyzers import ANALYZERS, Analyzer, PatternSnapshot
from backend.app.predictive import PredictiveAnalytics
from shared.config import AnalyzerTuning, settings
from shared.schemas import DailyMetrics, InsightPattern, InsightType, ProductivityInsight, TrackedEvent

logger = logging.getLogger(__name__)

TITLES = {
    InsightType.PEAK_HOURS.value: "Peak Productivity Hours Identified",
    InsightType.TASK_PATTERNS.value: "Task Completion Pattern Analysis",
    InsightType.COLLABORATION_STYLE.value: "Collaboration Style Assessment",
    InsightType.FEATURE_USAGE.value: "Feature Usage Optimization",
    InsightType.PRODUCTIVITY_TRENDS.value: "Productivity Trend Analysis",
    InsightType.FOCUS_PATTERNS.value: "Focus and Deep Work Assessment",
    InsightType.WORKLOAD_DISTRIBUTION.value: "Workload Distribution Analysis",
    InsightType.PROCRASTINATION_PATTERNS.value: "Task Completion Behavior",
    InsightType.TASK_COMPLETION_PREDICTION.value: "Task Completion Forecast",
    InsightType.PRODUCTIVITY_FORECAST.value: "Weekly Productivity Forecast",
    InsightType.WORKLOAD_CAPACITY.value: "Workload Capacity Assessment",
}


class SnapshotUnavailableError(Exception):
    """The user's event window could not be read from the store."""


def _percent(value: float) -> str:
    return f"{value * 100:.0f}%"


def _describe_peak_hours(data: dict) -> str:
    hours = len(data["peak_hours"])
    plural = "" if hours == 1 else "s"
    return (
        f"Analysis of your activity shows {hours} peak productivity hour{plural} "
        f"with {_percent(data['avg_productivity_score'])} completion rate."
    )


def _describe_task_patterns(data: dict) -> str:
    return (
        f"Your average task completion rate is {_percent(data['avg_completion_rate'])}. "
        f"You've completed {data['total_tasks_completed']} out of {data['total_tasks_created']} tasks."
    )


def _describe_collaboration_style(data: dict) -> str:
    return f"{data['description']} with a collaboration ratio of {_percent(data['collaboration_ratio'])}."


def _describe_feature_usage(data: dict) -> str:
    return (
        f"Your primary feature is {data['primary_feature']}, representing your main workflow focus. "
        f"You've had {data['total_interactions']} total interactions."
    )


def _describe_productivity_trends(data: dict) -> str:
    trend = data["trend"]
    if trend == "stable":
        return "Your productivity is stable over the analysis period."
    return f"Your productivity is {trend} by {abs(data['trend_percentage']):.0f}% over the analysis period."


def _describe_focus_patterns(data: dict) -> str:
    return (
        f"You averaged {data['avg_focus_time']:.0f} minutes per deep work session, "
        f"with {data['focus_sessions']} focus sessions out of {data['total_sessions']}."
    )


def _describe_workload_distribution(data: dict) -> str:
    return (
        f"You handle about {data['avg_daily_workload']:.1f} actions per active day across "
        f"{data['working_days']} days, with {_percent(data['consistency'])} consistency."
    )


def _describe_procrastination_patterns(data: dict) -> str:
    return (
        f"{data['incomplete_tasks']} of your {data['total_tasks_created']} tasks are still open, "
        f"a {_percent(data['task_completion_rate'])} completion rate."
    )


def _describe_task_completion_prediction(data: dict) -> str:
    return (
        f"Your next task is expected to take about {data['estimated_hours']:.1f} hours, "
        f"based on a historical average of {data['factors']['historical_average']:.1f} hours."
    )


def _describe_productivity_forecast(data: dict) -> str:
    return (
        f"You're expected to complete {data['forecast']['tasks_completed']} tasks over the next "
        f"{data['days']} days with a {data['trend_direction']} trend."
    )


def _describe_workload_capacity(data: dict) -> str:
    return (
        f"You're working at {data['current_capacity']:.1f} tasks per day against an optimal "
        f"{data['optimal_capacity']:.1f}, with {_percent(data['burnout_risk'])} burnout risk."
    )


DESCRIPTIONS: Dict[str, Callable[[dict], str]] = {
    InsightType.PEAK_HOURS.value: _describe_peak_hours,
    InsightType.TASK_PATTERNS.value: _describe_task_patterns,
    InsightType.COLLABORATION_STYLE.value: _describe_collaboration_style,
    InsightType.FEATURE_USAGE.value: _describe_feature_usage,
    InsightType.PRODUCTIVITY_TRENDS.value: _describe_productivity_trends,
    InsightType.FOCUS_PATTERNS.value: _describe_focus_patterns,
    InsightType.WORKLOAD_DISTRIBUTION.value: _describe_workload_distribution,
    InsightType.PROCRASTINATION_PATTERNS.value: _describe_procrastination_patterns,
    InsightType.TASK_COMPLETION_PREDICTION.value: _describe_task_completion_prediction,
    InsightType.PRODUCTIVITY_FORECAST.value: _describe_productivity_forecast,
    InsightType.WORKLOAD_CAPACITY.value: _describe_workload_capacity,
}


def describe(pattern: InsightPattern) -> str:
    describer = DESCRIPTIONS.get(pattern.type)
    if describer is not None:
        try:
            return describer(pattern.data)
        except (KeyError, TypeError):
            pass
    return f"Analysis completed with {_percent(pattern.confidence)} confidence."


def pattern_to_insight(user_id: str, pattern: InsightPattern, start: datetime, end: datetime) -> ProductivityInsight:
    return ProductivityInsight(
        user_id=user_id,
        insight_type=pattern.type,
        title=TITLES.get(pattern.type, pattern.type),
        description=describe(pattern),
        recommendation=pattern.recommendation,
        confidence_score=pattern.confidence,
        data_points=pattern.data,
        time_period_start=start,
        time_period_end=end,
    )


def failed_pattern(insight_type: InsightType, recommendation: str) -> InsightPattern:
    return InsightPattern(type=insight_type, confidence=0.0, data={}, recommendation=recommendation)


class InsightsEngine:
    """Runs every analyzer over one snapshot of a user's window and persists the confident results."""

    def __init__(
        self,
        session_factory,
        predictive: Optional[PredictiveAnalytics] = None,
        threshold: float = settings.INSIGHT_CONFIDENCE_THRESHOLD,
        tuning: AnalyzerTuning = settings.ANALYZER_TUNING,
        prediction_timeout: float = settings.PREDICTION_TIMEOUT_SECONDS,
        window_days: int = settings.ANALYSIS_WINDOW_DAYS,
        forecast_days: int = 7,
    ):
        self._session_factory = session_factory
        self._predictive = predictive
        self.threshold = threshold
        self.tuning = tuning
        self._prediction_timeout = prediction_timeout
        self._window_days = window_days
        self._forecast_days = forecast_days

    async def generate_insights(self, user_id: str) -> List[ProductivityInsight]:
        snapshot = await self.gather_snapshot(user_id)
        patterns = await self.analyze(snapshot)

        insights = [
            pattern_to_insight(user_id, pattern, snapshot.start, snapshot.end)
            for pattern in patterns
            if pattern.confidence >= self.threshold
        ]
        logger.info(
            f"Generated {len(insights)} of {len(patterns)} insights for {user_id} "
            f"(threshold {self.threshold})"
        )

        for insight in insights:
            try:
                await self.store_insight(insight)
            except Exception as e:
                logger.error(f"Error storing {insight.insight_type} insight for {user_id}: {e}")
        return insights

    async def gather_snapshot(self, user_id: str, now: Optional[datetime] = None) -> PatternSnapshot:
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=self._window_days)
        try:
            return await asyncio.to_thread(self._load_snapshot, user_id, start, end)
        except Exception as e:
            logger.error(f"Error gathering pattern data for {user_id}: {e}")
            raise SnapshotUnavailableError(f"Could not load analytics window for {user_id}") from e

    def _load_snapshot(self, user_id: str, start: datetime, end: datetime) -> PatternSnapshot:
        db = self._session_factory()
        try:
            events = crud.get_user_events(db, user_id, start, end)
            metrics = crud.get_user_daily_metrics(db, user_id, start.date(), end.date())
            return PatternSnapshot(
                user_id=user_id,
                start=start,
                end=end,
                events=tuple(TrackedEvent.from_row(row) for row in events),
                daily_metrics=tuple(DailyMetrics.model_validate(row) for row in metrics),
            )
        finally:
            db.close()

    async def analyze(self, snapshot: PatternSnapshot) -> List[InsightPattern]:
        """Run all analyzers concurrently. A failing analyzer yields a zero-confidence pattern."""
        statistical = [
            self._run_analyzer(insight_type, analyzer, snapshot)
            for insight_type, analyzer in ANALYZERS.items()
        ]
        predictive = [
            self._task_completion_pattern(snapshot.user_id),
            self._productivity_forecast_pattern(snapshot.user_id),
            self._workload_capacity_pattern(snapshot.user_id),
        ]
        return list(await asyncio.gather(*statistical, *predictive))

    async def _run_analyzer(
        self, insight_type: InsightType, analyzer: Analyzer, snapshot: PatternSnapshot
    ) -> InsightPattern:
        try:
            return await asyncio.to_thread(analyzer, snapshot, self.tuning)
        except Exception as e:
            logger.error(f"Error analyzing {insight_type.value} for {snapshot.user_id}: {e}")
            return failed_pattern(insight_type, f"Unable to analyze {insight_type.value.replace('_', ' ')}")

    async def _predict(self, call):
        if self._predictive is None:
            raise RuntimeError("no predictive analytics configured")
        return await asyncio.wait_for(call(), timeout=self._prediction_timeout)

    async def _task_completion_pattern(self, user_id: str) -> InsightPattern:
        try:
            prediction = await self._predict(lambda: self._predictive.predict_task_completion(user_id))
        except Exception as e:
            logger.error(f"Error generating task completion predictions for {user_id}: {e!r}")
            return failed_pattern(
                InsightType.TASK_COMPLETION_PREDICTION, "Unable to generate task completion predictions"
            )

        now = datetime.now(timezone.utc)
        estimated_hours = max(0.0, (prediction.estimated_completion - now).total_seconds() / 3600)
        return InsightPattern(
            type=InsightType.TASK_COMPLETION_PREDICTION,
            confidence=prediction.confidence,
            data={
                "estimated_completion": prediction.estimated_completion.isoformat(),
                "estimated_hours": estimated_hours,
                "factors": prediction.factors.model_dump(),
                "recommendations": prediction.recommendations,
            },
            recommendation=prediction.recommendations[0] if prediction.recommendations else None,
        )

    async def _productivity_forecast_pattern(self, user_id: str) -> InsightPattern:
        days = self._forecast_days
        try:
            forecast = await self._predict(
                lambda: self._predictive.generate_productivity_forecast(user_id, days)
            )
        except Exception as e:
            logger.error(f"Error generating productivity forecasts for {user_id}: {e!r}")
            return failed_pattern(InsightType.PRODUCTIVITY_FORECAST, "Unable to generate productivity forecasts")

        expected = forecast.predictions.tasks_completed
        if forecast.trend_direction == "improving":
            recommendation = f"Your productivity is trending upward! Expected {expected} tasks this week."
        elif forecast.trend_direction == "declining":
            recommendation = "Your productivity shows a declining trend. Consider adjusting your approach."
        else:
            recommendation = f"Your productivity is stable. Expected {expected} tasks this week."

        return InsightPattern(
            type=InsightType.PRODUCTIVITY_FORECAST,
            confidence=forecast.confidence,
            data={
                "days": days,
                "forecast": forecast.predictions.model_dump(),
                "trend_direction": forecast.trend_direction,
                "seasonal_factors": forecast.seasonal_factors.model_dump(),
                "peak_hours": forecast.predictions.peak_hours,
                "low_energy_periods": forecast.predictions.low_energy_periods,
            },
            recommendation=recommendation,
        )

    async def _workload_capacity_pattern(self, user_id: str) -> InsightPattern:
        try:
            capacity = await self._predict(lambda: self._predictive.predict_workload_capacity(user_id))
        except Exception as e:
            logger.error(f"Error generating workload capacity insights for {user_id}: {e!r}")
            return failed_pattern(InsightType.WORKLOAD_CAPACITY, "Unable to generate workload capacity insights")

        current, optimal = capacity.current_capacity, capacity.optimal_capacity
        if capacity.burnout_risk > 0.7 and current > 0:
            reduction = round((current - optimal) * 100 / current)
            recommendation = f"High burnout risk detected! Consider reducing workload by {reduction}%."
        elif current < optimal * 0.8 and current > 0:
            increase = round((optimal - current) * 100 / current)
            recommendation = f"You have capacity for more work. Consider increasing tasks by {increase}%."
        else:
            recommendation = "Your current workload appears well-balanced."

        return InsightPattern(
            type=InsightType.WORKLOAD_CAPACITY,
            confidence=self.tuning.capacity_confidence,
            data=capacity.model_dump(mode="json"),
            recommendation=recommendation,
        )

    async def store_insight(self, insight: ProductivityInsight) -> None:
        await asyncio.to_thread(self._store_insight, insight)

    def _store_insight(self, insight: ProductivityInsight) -> None:
        db = self._session_factory()
        try:
            crud.upsert_insight(db, insight)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
