import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, call, patch

import pytest
from redis.exceptions import RedisError
from sqlalchemy.exc import OperationalError

from backend.app import crud
from backend.app.buffer import EventBuffer, stamp_event
from backend.app.realtime import Broadcaster
from shared.models import AnalyticsEvent, UserDailyMetrics


def stored_count(session_factory) -> int:
    db = session_factory()
    try:
        return db.query(AnalyticsEvent).count()
    finally:
        db.close()


class TestStampEvent:

    def test_missing_timestamp_is_stamped(self, make_event):
        event = make_event()
        event = event.model_copy(update={"created_at": None})

        before = datetime.now(timezone.utc)
        tracked = stamp_event(event)

        assert tracked.created_at >= before
        assert tracked.id is not None

    def test_producer_timestamp_is_kept(self, make_event):
        created_at = datetime(2025, 3, 4, 9, 30, tzinfo=timezone.utc)
        tracked = stamp_event(make_event(created_at=created_at))
        assert tracked.created_at == created_at

    def test_future_timestamp_is_clamped_to_ingestion_time(self, make_event):
        future = datetime.now(timezone.utc) + timedelta(days=2)

        tracked = stamp_event(make_event(created_at=future))

        assert tracked.created_at <= datetime.now(timezone.utc)

    def test_out_of_range_properties_are_dropped_not_the_event(self):
        tracked = stamp_event({
            "session_id": "s",
            "event_category": "kanban",
            "event_action": "complete_task",
            "properties": {"complexity": 0, "duration": -5, "task_id": "task-1"},
        })

        assert tracked.properties.complexity is None
        assert tracked.properties.duration is None
        assert tracked.properties.task_id == "task-1"

    def test_naive_timestamp_is_treated_as_utc(self):
        tracked = stamp_event({
            "session_id": "s",
            "event_category": "wiki",
            "event_action": "create_page",
            "created_at": "2025-03-04T09:30:00",
        })
        assert tracked.created_at.tzinfo is timezone.utc
        assert tracked.created_at.hour == 9


class TestEventBuffer:

    @pytest.mark.asyncio
    async def test_concurrent_tracking_then_flush_stores_every_event(self, session_factory, make_event):
        buffer = EventBuffer(session_factory, batch_size=1000, flush_interval=0)
        await buffer.start()

        await asyncio.gather(*(buffer.track_event(make_event(user_id=f"user-{i % 5}")) for i in range(50)))
        stored = await buffer.flush()

        assert stored == 50
        assert stored_count(session_factory) == 50
        assert buffer.pending == 0
        await buffer.stop()

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self, session_factory, make_event):
        buffer = EventBuffer(session_factory, batch_size=5, flush_interval=0)
        await buffer.start()

        await buffer.track_event_batch([make_event() for _ in range(5)])
        await buffer.flush()

        assert stored_count(session_factory) == 5
        await buffer.stop()

    @pytest.mark.asyncio
    async def test_timer_flushes_buffer(self, session_factory, make_event):
        broadcaster = Broadcaster()
        messages = broadcaster.subscribe()
        buffer = EventBuffer(session_factory, broadcaster=broadcaster, batch_size=1000, flush_interval=0.01)
        await buffer.start()

        await buffer.track_event(make_event())
        while (await asyncio.wait_for(messages.get(), timeout=2))["type"] != "flush":
            pass

        assert stored_count(session_factory) == 1
        await buffer.stop()

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining_events(self, session_factory, make_event):
        buffer = EventBuffer(session_factory, batch_size=1000, flush_interval=0)
        await buffer.start()

        await buffer.track_event_batch([make_event(), make_event(action="complete_task")])
        await buffer.stop()

        assert not buffer.running
        assert stored_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_flush_updates_daily_metrics(self, session_factory, make_event):
        async with EventBuffer(session_factory, flush_interval=0) as buffer:
            await buffer.track_event_batch([
                make_event(action="create_task"),
                make_event(action="create_task"),
                make_event(action="complete_task"),
                make_event(action="search", category="memory"),
            ])
            await buffer.flush()

        db = session_factory()
        row = db.query(UserDailyMetrics).one()
        assert row.tasks_created == 2
        assert row.tasks_completed == 1
        assert row.searches_performed == 1
        assert row.actions_performed == 4
        db.close()

    @pytest.mark.asyncio
    async def test_malformed_event_is_logged_and_dropped(self, session_factory, make_event):
        async with EventBuffer(session_factory, flush_interval=0) as buffer:
            await buffer.track_event({"session_id": "s", "event_action": "create_task"})
            await buffer.track_event_batch([
                {"session_id": "s", "event_category": "not-a-category", "event_action": "x"},
                make_event(),
            ])
            stored = await buffer.flush()

        assert stored == 1

    @pytest.mark.asyncio
    async def test_tracking_before_start_does_not_raise(self, session_factory, make_event):
        buffer = EventBuffer(session_factory, flush_interval=0)
        await buffer.track_event(make_event())
        assert buffer.pending == 0

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_affect_others(self, session_factory, make_event):
        seen = []

        def broken(event):
            raise RuntimeError("listener failed")

        async with EventBuffer(session_factory, flush_interval=0) as buffer:
            buffer.add_listener(broken)
            buffer.add_listener(seen.append)
            await buffer.track_event(make_event())
            await buffer.flush()

        assert len(seen) == 1
        assert seen[0].event_action == "create_task"

    @pytest.mark.asyncio
    async def test_failed_insert_drops_batch_and_dead_letters_it(self, session_factory, make_event):
        dead_letter = AsyncMock()
        buffer = EventBuffer(session_factory, flush_interval=0, dead_letter=dead_letter)
        await buffer.start()

        with patch("backend.app.buffer.crud.insert_events", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
            await buffer.track_event_batch([make_event(), make_event()])
            stored = await buffer.flush()

        assert stored == 0
        assert buffer.pending == 0
        dead_letter.assert_awaited_once()
        batch, error = dead_letter.await_args.args
        assert len(batch) == 2
        assert isinstance(error, OperationalError)

        await buffer.track_event(make_event())
        assert await buffer.flush() == 1
        await buffer.stop()

    @pytest.mark.asyncio
    async def test_counters_are_incremented_per_day_and_user(self, session_factory, mock_redis, make_event):
        created_at = datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)
        async with EventBuffer(session_factory, redis=mock_redis, flush_interval=0) as buffer:
            await buffer.track_event(make_event(created_at=created_at))
            await buffer.flush()

        pipe = mock_redis.pipeline.return_value
        assert pipe.hincrby.call_args_list == [
            call("metrics:2025-06-01", "total_events", 1),
            call("metrics:2025-06-01:kanban", "create_task", 1),
            call("user_metrics:user-1:2025-06-01", "create_task", 1),
        ]
        assert pipe.expire.call_count == 3
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cache_failure_does_not_stop_ingestion(self, session_factory, mock_redis, make_event):
        mock_redis.pipeline.return_value.execute.side_effect = RedisError("connection refused")

        async with EventBuffer(session_factory, redis=mock_redis, flush_interval=0) as buffer:
            await buffer.track_event(make_event())
            assert await buffer.flush() == 1

    @pytest.mark.asyncio
    async def test_publishes_events_by_user_and_flushes_globally(self, session_factory, make_event):
        broadcaster = Broadcaster()
        own = broadcaster.subscribe("user-1")
        everything = broadcaster.subscribe()

        async with EventBuffer(session_factory, broadcaster=broadcaster, flush_interval=0) as buffer:
            await buffer.track_event(make_event(user_id="user-1"))
            await buffer.track_event(make_event(user_id="user-2"))
            await buffer.flush()

        first = await own.get()
        assert first["type"] == "event"
        assert first["data"]["user_id"] == "user-1"
        assert own._queue.empty()

        received = [await everything.get() for _ in range(3)]
        assert [message["type"] for message in received] == ["event", "event", "flush"]
        assert received[-1]["count"] == 2


async def wait_until(predicate, attempts: int = 200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestFlushConcurrency:

    @pytest.mark.asyncio
    async def test_loop_stays_responsive_during_slow_insert(self, session_factory, make_event):
        real_insert = crud.insert_events
        writing = threading.Event()

        def slow_insert(db, events):
            writing.set()
            time.sleep(0.5)
            return real_insert(db, events)

        buffer = EventBuffer(session_factory, batch_size=1, flush_interval=0)
        await buffer.start()

        with patch("backend.app.buffer.crud.insert_events", side_effect=slow_insert):
            await buffer.track_event(make_event())
            await wait_until(writing.is_set)

            started = time.perf_counter()
            await asyncio.sleep(0.01)
            await buffer.track_event(make_event())
            elapsed = time.perf_counter() - started

            assert elapsed < 0.1
            assert buffer.flush_in_progress
            await buffer.stop()

        assert stored_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_flushes_never_overlap(self, session_factory, make_event):
        real_insert = crud.insert_events
        gate = threading.Event()
        lock = threading.Lock()
        active = []
        peak = []
        written = []

        def gated_insert(db, events):
            with lock:
                active.append(1)
                peak.append(len(active))
            gate.wait(timeout=5)
            written.extend(event.id for event in events)
            try:
                return real_insert(db, events)
            finally:
                with lock:
                    active.pop()

        buffer = EventBuffer(session_factory, batch_size=1000, flush_interval=0.01)
        await buffer.start()

        with patch("backend.app.buffer.crud.insert_events", side_effect=gated_insert):
            await buffer.track_event_batch([make_event() for _ in range(3)])
            first = asyncio.create_task(buffer.flush())
            await wait_until(lambda: bool(peak))

            await buffer.track_event_batch([make_event() for _ in range(2)])
            second = asyncio.create_task(buffer.flush())
            await asyncio.sleep(0.1)

            assert not second.done()
            assert len(peak) == 1

            gate.set()
            await asyncio.gather(first, second)
            assert len(written) == 5
            await buffer.stop()

        assert max(peak) == 1
        assert len(set(written)) == len(written) == 5
        assert stored_count(session_factory) == 5
