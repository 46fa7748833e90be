"""Daily metrics aggregation for flushed event batches."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Tuple

from sqlalchemy.orm import Session

from backend.app import crud
from shared.schemas import EventAction, TrackedEvent

logger = logging.getLogger(__name__)

ACTION_COLUMNS = {
    EventAction.CREATE_TASK.value: "tasks_created",
    EventAction.COMPLETE_TASK.value: "tasks_completed",
    EventAction.CREATE_PAGE.value: "wiki_pages_created",
    EventAction.STORE_MEMORY.value: "memories_stored",
    EventAction.SEARCH.value: "searches_performed",
}


@dataclass
class DailyDelta:
    user_id: str
    date: date
    counts: Dict[str, int] = field(default_factory=dict)


def summarize_batch(events: Iterable[TrackedEvent]) -> List[DailyDelta]:
    """Group events by (user, day) and count tracked actions plus the total."""
    groups: Dict[Tuple[str, date], Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for event in events:
        if not event.user_id:
            continue
        counts = groups[(event.user_id, event.created_at.date())]
        column = ACTION_COLUMNS.get(event.event_action)
        if column:
            counts[column] += 1
        counts["actions_performed"] += 1

    return [
        DailyDelta(user_id=user_id, date=day, counts=dict(counts))
        for (user_id, day), counts in sorted(groups.items())
    ]


def apply_batch(db: Session, events: List[TrackedEvent]) -> int:
    """Add the batch's counts onto the stored daily rows. Returns the number of rows touched."""
    deltas = summarize_batch(events)
    for delta in deltas:
        crud.increment_daily_metrics(db, delta.user_id, delta.date, delta.counts)
    db.commit()
    logger.info(f"Aggregated {len(events)} events into {len(deltas)} daily rows")
    return len(deltas)
