import asyncio
import json
import sys

import nats

from shared.config import settings
from shared.messaging import EVENTS_SUBJECT

CHUNK_SIZE = 500


async def publish_file(json_path: str) -> None:
    with open(json_path, encoding="utf-8") as fh:
        events = json.load(fh)["events"]

    nc = await nats.connect(settings.NATS_URL)
    try:
        for offset in range(0, len(events), CHUNK_SIZE):
            chunk = events[offset:offset + CHUNK_SIZE]
            await nc.publish(EVENTS_SUBJECT, json.dumps({"events": chunk}).encode())
        await nc.flush()
        print(f"Published {len(events)} events to {EVENTS_SUBJECT}")
    finally:
        await nc.close()


if __name__ == "__main__":
    asyncio.run(publish_file(sys.argv[1] if len(sys.argv) > 1 else "events.json"))
