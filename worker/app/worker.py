import asyncio
import json
import logging
from datetime import datetime, timezone

import nats
from nats.aio.msg import Msg
from pydantic import ValidationError

from backend.app import cache
from backend.app.service import AnalyticsService
from shared.config import settings
from shared.database import Base, SessionLocal, engine
from shared.messaging import DLQ_SUBJECT, EVENTS_SUBJECT, nats_dead_letter_sink
from shared.schemas import EventCreate

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def send_to_dlq(nc: nats.NATS, original_msg: Msg, error_msg: str):
    try:
        headers = {
            "X-Original-Subject": original_msg.subject,
            "X-Error-Message": error_msg[:512],
            "X-Failed-At": datetime.now(timezone.utc).isoformat(),
        }
        await nc.publish(DLQ_SUBJECT, original_msg.data, headers=headers)
        logger.warning(f"Message sent to DLQ: {error_msg}")
    except Exception as e:
        logger.error(f"Failed to send message to DLQ: {e}")


def parse_events(data: bytes):
    """Decode a ``{"events": [...]}`` payload. Returns the valid events and the per-event errors."""
    payload = json.loads(data.decode())
    if not isinstance(payload, dict) or not isinstance(payload.get("events"), list):
        raise ValueError("payload must be an object with an 'events' list")

    events, errors = [], []
    for index, event_data in enumerate(payload["events"]):
        try:
            events.append(EventCreate.model_validate(event_data))
        except ValidationError as e:
            errors.append(f"event {index}: {e.error_count()} validation errors")
    return events, errors


async def process_events_message(msg: Msg, nc: nats.NATS, service: AnalyticsService):
    try:
        events, errors = parse_events(msg.data)
    except (ValueError, UnicodeDecodeError) as e:
        logger.error(f"Malformed events message: {e}")
        await send_to_dlq(nc, msg, str(e))
        return

    if errors:
        logger.error(f"Rejected {len(errors)} malformed events: {'; '.join(errors[:5])}")
        if not events:
            await send_to_dlq(nc, msg, "; ".join(errors))
            return

    await service.track_event_batch(events)
    logger.info(f"Tracked {len(events)} events from {msg.subject}")


async def insight_trigger_loop(service: AnalyticsService, interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await service.trigger_insight_generation()
        except Exception as e:
            logger.error(f"Error in scheduled insight generation: {e}")


async def shutdown(service: AnalyticsService, redis, nc: nats.NATS, *tasks: asyncio.Task):
    """Cancel the worker's loops, then flush the service and close the clients."""
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await service.stop()
    await redis.aclose()
    await nc.close()
    logger.info("Worker stopped")


async def main():
    logger.info("Starting NATS worker...")
    Base.metadata.create_all(bind=engine)

    nc = await nats.connect(settings.NATS_URL)
    logger.info("Connected to NATS")

    redis = cache.create_redis(settings.REDIS_URL)
    service = AnalyticsService(SessionLocal, redis=redis, dead_letter=nats_dead_letter_sink(nc))
    await service.start()

    sub = await nc.subscribe(EVENTS_SUBJECT)
    logger.info(f"Subscribed to {EVENTS_SUBJECT}")

    dlq_sub = await nc.subscribe(DLQ_SUBJECT)
    logger.info(f"Subscribed to {DLQ_SUBJECT} for monitoring")

    async def dlq_handler():
        async for msg in dlq_sub.messages:
            logger.error(f"DLQ message received: {msg.header}")

    dlq_task = asyncio.create_task(dlq_handler())
    trigger_task = asyncio.create_task(
        insight_trigger_loop(service, settings.INSIGHT_TRIGGER_INTERVAL_SECONDS)
    )

    try:
        async for msg in sub.messages:
            await process_events_message(msg, nc, service)
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        await shutdown(service, redis, nc, dlq_task, trigger_task)


if __name__ == "__main__":
    asyncio.run(main())
