"""Event buffer owned by a single ingestion task.

Callers never touch the buffer directly: ``track_event``, ``track_event_batch`` and
``flush`` post messages to a bounded inbox that one asyncio task drains in order. The
flush itself swaps the buffer for an empty one and writes the detached batch from a
separate task through a worker thread, so ingestion keeps running while the store is busy.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError
from redis.asyncio import Redis

from backend.app import aggregator, cache, crud
from backend.app.realtime import Broadcaster
from shared.config import settings
from shared.messaging import DeadLetterSink
from shared.schemas import EventCreate, TrackedEvent

logger = logging.getLogger(__name__)

EventInput = Union[EventCreate, Dict[str, Any]]
Listener = Callable[[TrackedEvent], None]


@dataclass
class _Ingest:
    events: List[TrackedEvent]


@dataclass
class _Flush:
    waiter: Optional[asyncio.Future] = None


@dataclass
class _Stop:
    waiter: asyncio.Future


def stamp_event(event: EventInput) -> TrackedEvent:
    """Identify the event and fix its timestamp.

    Producer timestamps are kept so imported history lands on the right hour and day,
    but never later than the moment of ingestion.
    """
    if not isinstance(event, EventCreate):
        event = EventCreate.model_validate(event)
    now = datetime.now(timezone.utc)
    created_at = event.created_at or now
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if created_at > now:
        created_at = now
    return TrackedEvent(
        **event.model_dump(exclude={"created_at"}),
        id=uuid.uuid4(),
        created_at=created_at,
    )


class EventBuffer:
    def __init__(
        self,
        session_factory,
        redis: Optional[Redis] = None,
        broadcaster: Optional[Broadcaster] = None,
        batch_size: int = settings.EVENT_BATCH_SIZE,
        flush_interval: float = settings.FLUSH_INTERVAL_SECONDS,
        counter_ttl: int = settings.COUNTER_TTL_SECONDS,
        inbox_size: int = settings.INBOX_MAX_SIZE,
        dead_letter: Optional[DeadLetterSink] = None,
    ):
        self._session_factory = session_factory
        self._redis = redis
        self._broadcaster = broadcaster
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._counter_ttl = counter_ttl
        self._dead_letter = dead_letter

        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=inbox_size)
        self._events: List[TrackedEvent] = []
        self._listeners: Set[Listener] = set()
        self._actor: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._actor is not None and not self._actor.done()

    @property
    def flush_in_progress(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    @property
    def pending(self) -> int:
        return len(self._events)

    async def start(self) -> None:
        if self.running:
            return
        self._actor = asyncio.create_task(self._run(), name="event-buffer")
        if self._flush_interval and self._flush_interval > 0:
            self._timer = asyncio.create_task(self._tick(), name="event-buffer-timer")
        logger.info(
            f"Event buffer started (batch size {self._batch_size}, flush every {self._flush_interval}s)"
        )

    async def stop(self) -> None:
        """Drain everything already posted, write it out, then shut the actor down."""
        if self._timer:
            self._timer.cancel()
            self._timer = None
        if not self.running:
            return
        waiter = asyncio.get_running_loop().create_future()
        await self._inbox.put(_Stop(waiter))
        await waiter
        await self._actor
        self._actor = None
        logger.info("Event buffer stopped")

    async def __aenter__(self) -> "EventBuffer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.discard(listener)

    async def track_event(self, event: EventInput) -> None:
        try:
            self._post(_Ingest([stamp_event(event)]))
        except ValidationError as e:
            logger.error(f"Rejected malformed analytics event: {e}")
        except Exception as e:
            logger.error(f"Error tracking analytics event: {e}")

    async def track_event_batch(self, events: List[EventInput]) -> None:
        stamped = []
        for event in events:
            try:
                stamped.append(stamp_event(event))
            except ValidationError as e:
                logger.error(f"Rejected malformed analytics event in batch: {e}")
        if not stamped:
            return
        try:
            self._post(_Ingest(stamped))
        except Exception as e:
            logger.error(f"Error tracking analytics event batch: {e}")

    async def flush(self) -> int:
        """Write every event posted before this call. Returns the number of events stored."""
        if not self.running:
            return await self._flush_inline()
        waiter = asyncio.get_running_loop().create_future()
        await self._inbox.put(_Flush(waiter))
        return await waiter

    def _post(self, message) -> None:
        if not self.running:
            raise RuntimeError("event buffer is not running")
        try:
            self._inbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"Analytics inbox full, dropping {len(message.events)} events")

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            if self.flush_in_progress:
                logger.debug("Flush already in progress, skipping timer tick")
                continue
            try:
                self._inbox.put_nowait(_Flush())
            except asyncio.QueueFull:
                logger.warning("Analytics inbox full, skipping timer flush")

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                if isinstance(message, _Ingest):
                    await self._ingest(message.events)
                elif isinstance(message, _Flush):
                    await self._start_flush(message.waiter)
                elif isinstance(message, _Stop):
                    await self._wait_for_flush()
                    await self._start_flush(None)
                    await self._wait_for_flush()
                    message.waiter.set_result(None)
                    return
            except Exception as e:
                logger.error(f"Error in event buffer: {e}")
                waiter = getattr(message, "waiter", None)
                if waiter is not None and not waiter.done():
                    waiter.set_exception(e)
            finally:
                self._inbox.task_done()

    async def _ingest(self, events: List[TrackedEvent]) -> None:
        self._events.extend(events)

        for event in events:
            self._notify_listeners(event)
            if self._broadcaster:
                self._broadcaster.publish(
                    {"type": "event", "data": event.model_dump(mode="json")},
                    user_id=event.user_id,
                )

        if self._redis is not None:
            try:
                await cache.increment_event_counters(self._redis, events, self._counter_ttl)
            except Exception as e:
                logger.error(f"Error updating real-time metrics: {e}")

        if len(self._events) >= self._batch_size:
            await self._start_flush(None)

    def _notify_listeners(self, event: TrackedEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in real-time analytics listener: {e}")

    async def _start_flush(self, waiter: Optional[asyncio.Future]) -> None:
        if self.flush_in_progress:
            if waiter is None:
                logger.debug("Flush already in progress, skipping")
                return
            await self._wait_for_flush()

        batch, self._events = self._events, []
        self._flush_task = asyncio.create_task(self._write_batch(batch))
        if waiter is not None:
            self._flush_task.add_done_callback(lambda task: _resolve(waiter, task))

    async def _wait_for_flush(self) -> None:
        if self._flush_task is not None:
            await asyncio.shield(self._flush_task)

    async def _flush_inline(self) -> int:
        await self._wait_for_flush()
        batch, self._events = self._events, []
        return await self._write_batch(batch)

    async def _write_batch(self, batch: List[TrackedEvent]) -> int:
        if not batch:
            return 0

        try:
            await asyncio.to_thread(self._store_batch, batch)
        except Exception as e:
            logger.error(f"Error flushing event buffer, dropping {len(batch)} events: {e}")
            if self._dead_letter:
                await self._dead_letter(batch, e)
            return 0

        if self._broadcaster:
            self._broadcaster.publish({"type": "flush", "count": len(batch)})
        return len(batch)

    def _store_batch(self, batch: List[TrackedEvent]) -> None:
        """Insert the batch and fold it into the daily metrics. Runs in a worker thread."""
        db = self._session_factory()
        try:
            try:
                crud.insert_events(db, batch)
                db.commit()
            except Exception:
                db.rollback()
                raise

            logger.info(f"Flushed {len(batch)} events")
            try:
                aggregator.apply_batch(db, batch)
            except Exception as e:
                db.rollback()
                logger.error(f"Error updating daily analytics: {e}")
        finally:
            db.close()


def _resolve(waiter: asyncio.Future, task: asyncio.Task) -> None:
    if waiter.done():
        return
    if task.cancelled():
        waiter.cancel()
    elif task.exception() is not None:
        waiter.set_exception(task.exception())
    else:
        waiter.set_result(task.result())
