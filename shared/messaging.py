import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List

from shared.schemas import TrackedEvent

logger = logging.getLogger(__name__)

EVENTS_SUBJECT = "analytics.events"
DLQ_SUBJECT = "analytics.events.dlq"

DeadLetterSink = Callable[[List[TrackedEvent], Exception], Awaitable[None]]


def encode_events(events: List[TrackedEvent]) -> bytes:
    message = {"events": [event.model_dump(mode="json") for event in events]}
    return json.dumps(message, default=str).encode()


def nats_dead_letter_sink(nats_client) -> DeadLetterSink:
    """Publish batches the store rejected to the DLQ subject so they can be inspected or replayed."""

    async def publish(events: List[TrackedEvent], error: Exception) -> None:
        if not nats_client or not getattr(nats_client, "is_connected", False):
            logger.warning(f"NATS unavailable, {len(events)} dropped events not dead-lettered")
            return

        headers = {
            "X-Original-Subject": EVENTS_SUBJECT,
            "X-Error-Message": str(error)[:512],
            "X-Failed-At": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await nats_client.publish(DLQ_SUBJECT, encode_events(events), headers=headers)
            logger.warning(f"Sent {len(events)} events to {DLQ_SUBJECT}: {error}")
        except Exception as e:
            logger.error(f"Failed to send events to DLQ: {e}")

    return publish
