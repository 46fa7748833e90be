import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from backend.app.analyzers import ANALYZERS
from backend.app.buffer import EventBuffer
from backend.app.insights import (
    InsightsEngine,
    SnapshotUnavailableError,
    describe,
    pattern_to_insight,
)
from backend.app.predictive import (
    default_productivity_forecast,
    default_task_prediction,
    default_workload_prediction,
)
from shared.models import ProductivityInsight
from shared.schemas import InsightPattern, InsightType


@pytest.fixture
def predictive():
    mock = MagicMock()
    mock.predict_task_completion = AsyncMock(return_value=default_task_prediction(5))
    mock.generate_productivity_forecast = AsyncMock(return_value=default_productivity_forecast(7))
    mock.predict_workload_capacity = AsyncMock(return_value=default_workload_prediction())
    return mock


@pytest_asyncio.fixture
async def scenario(session_factory, make_event):
    """Ten tasks created and seven completed between 9 and 11 AM over five days."""
    first_day = (datetime.now(timezone.utc) - timedelta(days=6)).replace(hour=0, minute=0, second=0, microsecond=0)
    completed_per_day = [2, 2, 1, 1, 1]

    events = []
    for day, completed in enumerate(completed_per_day):
        morning = first_day + timedelta(days=day, hours=9)
        events += [
            make_event(action="create_task", created_at=morning),
            make_event(action="create_task", created_at=morning + timedelta(minutes=30)),
        ]
        events += [
            make_event(action="complete_task", created_at=morning + timedelta(hours=1, minutes=10 * i))
            for i in range(completed)
        ]

    async with EventBuffer(session_factory, flush_interval=0) as buffer:
        await buffer.track_event_batch(events)
        await buffer.flush()
    return session_factory


def by_type(insights):
    return {insight.insight_type: insight for insight in insights}


class TestInsightsEngine:

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, scenario, predictive):
        engine = InsightsEngine(scenario, predictive, threshold=0.3)

        insights = by_type(await engine.generate_insights("user-1"))

        peak = insights[InsightType.PEAK_HOURS.value]
        assert set(peak.data_points["peak_hours"]) <= {9, 10}
        assert peak.data_points["peak_hours"]
        assert peak.confidence_score == pytest.approx(0.35)

        tasks = insights[InsightType.TASK_PATTERNS.value]
        assert tasks.data_points["avg_completion_rate"] == pytest.approx(0.7)
        assert tasks.data_points["total_tasks_created"] == 10
        assert tasks.data_points["total_tasks_completed"] == 7
        assert tasks.confidence_score == pytest.approx(0.475)
        assert tasks.description == (
            "Your average task completion rate is 70%. You've completed 7 out of 10 tasks."
        )

        db = scenario()
        stored = {row.insight_type for row in db.query(ProductivityInsight).filter_by(user_id="user-1")}
        db.close()
        assert stored == set(insights)

    @pytest.mark.asyncio
    async def test_default_threshold_filters_low_confidence_patterns(self, scenario, predictive):
        engine = InsightsEngine(scenario, predictive)

        insights = by_type(await engine.generate_insights("user-1"))

        assert InsightType.PEAK_HOURS.value not in insights
        assert InsightType.TASK_PATTERNS.value not in insights
        assert InsightType.WORKLOAD_CAPACITY.value in insights
        assert all(insight.confidence_score >= 0.6 for insight in insights.values())

    @pytest.mark.asyncio
    async def test_regeneration_keeps_one_row_per_type(self, scenario, predictive):
        engine = InsightsEngine(scenario, predictive, threshold=0.0)

        first = await engine.generate_insights("user-1")
        second = await engine.generate_insights("user-1")

        db = scenario()
        assert db.query(ProductivityInsight).count() == len(second) == len(first) == 11
        db.close()

    @pytest.mark.asyncio
    async def test_predictive_failure_becomes_zero_confidence(self, scenario, predictive):
        predictive.predict_task_completion.side_effect = RuntimeError("model offline")
        engine = InsightsEngine(scenario, predictive, threshold=0.0)

        patterns = await engine.analyze(await engine.gather_snapshot("user-1"))

        failed = next(p for p in patterns if p.type == InsightType.TASK_COMPLETION_PREDICTION.value)
        assert failed.confidence == 0.0
        assert failed.recommendation == "Unable to generate task completion predictions"
        assert len(patterns) == 11
        forecast = next(p for p in patterns if p.type == InsightType.PRODUCTIVITY_FORECAST.value)
        assert forecast.confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_predictive_timeout_becomes_zero_confidence(self, scenario, predictive):
        async def slow(user_id):
            await asyncio.sleep(5)

        predictive.predict_workload_capacity = slow
        engine = InsightsEngine(scenario, predictive, prediction_timeout=0.01)

        insights = by_type(await engine.generate_insights("user-1"))

        assert InsightType.WORKLOAD_CAPACITY.value not in insights

    @pytest.mark.asyncio
    async def test_without_predictive_collaborator(self, scenario):
        engine = InsightsEngine(scenario, None, threshold=0.0)
        patterns = await engine.analyze(await engine.gather_snapshot("user-1"))

        predictive_types = {
            InsightType.TASK_COMPLETION_PREDICTION.value,
            InsightType.PRODUCTIVITY_FORECAST.value,
            InsightType.WORKLOAD_CAPACITY.value,
        }
        assert all(p.confidence == 0.0 for p in patterns if p.type in predictive_types)

    @pytest.mark.asyncio
    async def test_failing_analyzer_does_not_abort_siblings(self, scenario, predictive, monkeypatch):
        def broken(snapshot, tuning):
            raise ZeroDivisionError("bad data")

        monkeypatch.setitem(ANALYZERS, InsightType.FOCUS_PATTERNS, broken)
        engine = InsightsEngine(scenario, predictive, threshold=0.0)

        patterns = {p.type: p for p in await engine.analyze(await engine.gather_snapshot("user-1"))}

        assert patterns[InsightType.FOCUS_PATTERNS.value].confidence == 0.0
        assert patterns[InsightType.PEAK_HOURS.value].confidence > 0

    @pytest.mark.asyncio
    async def test_snapshot_failure_propagates(self, predictive):
        def broken_session():
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        engine = InsightsEngine(broken_session, predictive)

        with pytest.raises(SnapshotUnavailableError):
            await engine.generate_insights("user-1")

    @pytest.mark.asyncio
    async def test_store_failure_still_returns_insights(self, scenario, predictive):
        engine = InsightsEngine(scenario, predictive, threshold=0.0)

        with patch("backend.app.insights.crud.upsert_insight", side_effect=OperationalError("INSERT", {}, Exception("x"))):
            insights = await engine.generate_insights("user-1")

        assert len(insights) == 11


class TestDescriptions:

    def test_unknown_data_falls_back_to_confidence(self):
        pattern = InsightPattern(type=InsightType.FOCUS_PATTERNS, confidence=0.42, data={})
        assert describe(pattern) == "Analysis completed with 42% confidence."

    def test_trend_description(self):
        pattern = InsightPattern(
            type=InsightType.PRODUCTIVITY_TRENDS,
            confidence=0.7,
            data={"trend": "declining", "trend_percentage": -23.4},
        )
        assert describe(pattern) == "Your productivity is declining by 23% over the analysis period."

    def test_pattern_to_insight_uses_title_and_window(self):
        start = datetime(2025, 5, 1, tzinfo=timezone.utc)
        end = datetime(2025, 5, 31, tzinfo=timezone.utc)
        pattern = InsightPattern(
            type=InsightType.PEAK_HOURS,
            confidence=0.8,
            data={"peak_hours": [9, 10], "avg_productivity_score": 0.5},
            recommendation="Schedule important tasks during 9 AM-10 AM",
        )

        insight = pattern_to_insight("user-1", pattern, start, end)

        assert insight.title == "Peak Productivity Hours Identified"
        assert insight.description == (
            "Analysis of your activity shows 2 peak productivity hours with 50% completion rate."
        )
        assert insight.time_period_start == start
        assert insight.is_active and not insight.is_read
