import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from backend.app import crud
from backend.app.buffer import stamp_event
from backend.app.predictive import (
    HeuristicPredictiveAnalytics,
    TimePoint,
    analyze_trend,
    default_task_prediction,
    exponential_smoothing,
    time_of_day_efficiency,
    workload_adjustments,
)


@pytest.fixture
def seeded(session_factory, make_event):
    """One completed two-hour task at 10 AM on each of the last 20 days."""
    today = datetime.now(timezone.utc).replace(hour=10, minute=0, second=0, microsecond=0)
    events = [
        stamp_event(make_event(
            action="complete_task",
            created_at=today - timedelta(days=day),
            properties={"duration": 120, "complexity": 4},
        ))
        for day in range(1, 21)
    ]
    db = session_factory()
    crud.insert_events(db, events)
    db.commit()
    db.close()
    return session_factory


class TestHeuristicPredictiveAnalytics:

    @pytest.mark.asyncio
    async def test_defaults_with_insufficient_data(self, session_factory):
        analytics = HeuristicPredictiveAnalytics(session_factory)

        task = await analytics.predict_task_completion("user-1", complexity=10)
        forecast = await analytics.generate_productivity_forecast("user-1", days=7)
        capacity = await analytics.predict_workload_capacity("user-1")

        assert task.confidence == 0.5
        assert task.factors.historical_average == pytest.approx(5.0)
        assert forecast.confidence == 0.4
        assert forecast.predictions.tasks_completed == 21
        assert capacity.current_capacity == 6
        assert capacity.recommendations.suggested_task_limit == 8

    @pytest.mark.asyncio
    async def test_task_prediction_from_history(self, seeded):
        analytics = HeuristicPredictiveAnalytics(seeded)

        prediction = await analytics.predict_task_completion("user-1", task_id="task-9", complexity=8)

        assert prediction.task_id == "task-9"
        assert prediction.confidence == pytest.approx(20 / 30 * 0.75)
        assert prediction.factors.historical_average == pytest.approx(2.0)
        assert prediction.factors.complexity == pytest.approx(0.8)
        assert "High complexity task - consider tackling it during your peak hours" in prediction.recommendations
        assert prediction.estimated_completion > datetime.now(timezone.utc)

    @pytest.mark.asyncio
    async def test_forecast_from_history(self, seeded):
        analytics = HeuristicPredictiveAnalytics(seeded)

        forecast = await analytics.generate_productivity_forecast("user-1", days=7)

        assert forecast.confidence == pytest.approx(20 / 30 * 0.82)
        assert forecast.predictions.tasks_completed == 7
        assert forecast.predictions.peak_hours[0] == 10
        assert 10 not in forecast.predictions.low_energy_periods
        assert forecast.trend_direction == "stable"
        assert forecast.end - forecast.start == timedelta(days=7)

    @pytest.mark.asyncio
    async def test_workload_capacity_from_history(self, seeded):
        analytics = HeuristicPredictiveAnalytics(seeded)

        capacity = await analytics.predict_workload_capacity("user-1")

        assert capacity.current_capacity == pytest.approx(1.0)
        assert 4 <= capacity.optimal_capacity <= 10
        assert 0 <= capacity.burnout_risk <= 1
        assert capacity.recommendations.focus_time_blocks[0].start == 10
        assert capacity.next_week_forecast.expected_load == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_cached_prediction_skips_the_store(self, mock_redis):
        cached = default_task_prediction(3).model_dump(mode="json")
        mock_redis.get.return_value = json.dumps(cached)
        session_factory = MagicMock()
        analytics = HeuristicPredictiveAnalytics(session_factory, mock_redis)

        prediction = await analytics.predict_task_completion("user-1", complexity=3)

        assert prediction.factors.complexity == pytest.approx(0.3)
        session_factory.assert_not_called()
        mock_redis.get.assert_awaited_once_with("prediction:task:user-1:general:3")

    @pytest.mark.asyncio
    async def test_predictions_are_cached_for_an_hour(self, seeded, mock_redis):
        analytics = HeuristicPredictiveAnalytics(seeded, mock_redis)

        await analytics.predict_workload_capacity("user-1")

        key, _ = mock_redis.set.await_args.args
        assert key == "prediction:workload:user-1"
        assert mock_redis.set.await_args.kwargs["ex"] == 3600

    @pytest.mark.asyncio
    async def test_train_models_updates_accuracy(self, seeded):
        analytics = HeuristicPredictiveAnalytics(seeded)
        before = analytics.models["task_completion"].last_trained

        await analytics.train_models("user-1")

        model = analytics.models["task_completion"]
        assert model.accuracy == pytest.approx(0.75 * 0.9 + (20 / 30) * 0.1)
        assert model.last_trained >= before

    @pytest.mark.asyncio
    async def test_train_models_without_data_is_a_no_op(self, session_factory):
        analytics = HeuristicPredictiveAnalytics(session_factory)
        await analytics.train_models("user-1")
        assert analytics.models["productivity_forecast"].accuracy == 0.82


class TestHeuristics:

    def test_exponential_smoothing(self):
        assert exponential_smoothing([1, 2, 3], 0.3, 3) == pytest.approx([1.81, 1.81, 1.81])
        assert exponential_smoothing([], 0.3, 2) == [1.0, 1.0]

    def test_trend_direction(self):
        start = datetime(2025, 6, 1, tzinfo=timezone.utc)
        rising = [TimePoint(start + timedelta(hours=i), value) for i, value in enumerate([1, 1, 3, 3])]
        falling = [TimePoint(start + timedelta(hours=i), value) for i, value in enumerate([3, 3, 1, 1])]
        flat = [TimePoint(start + timedelta(hours=i), 2) for i in range(4)]

        assert analyze_trend(rising) == "improving"
        assert analyze_trend(falling) == "declining"
        assert analyze_trend(flat) == "stable"
        assert analyze_trend(rising[:3]) == "stable"

    def test_time_of_day_efficiency(self):
        assert time_of_day_efficiency(10) == 1.2
        assert time_of_day_efficiency(15) == 1.1
        assert time_of_day_efficiency(9) == 1.0
        assert time_of_day_efficiency(22) == 0.8

    def test_workload_adjustments(self):
        assert workload_adjustments(10, 7)[0] == "Reduce task load by 20-30% next week"
        assert workload_adjustments(4, 7)[0] == "You have capacity for 10-20% more tasks"
        assert workload_adjustments(7, 7) == ["Current workload is well-balanced"]
