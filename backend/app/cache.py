import json
import logging
import time
from datetime import datetime, date, timezone
from typing import Any, Dict, Iterable, List, Optional

from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from shared.config import settings
from shared.schemas import PerformanceMetricCreate, TrackedEvent

logger = logging.getLogger(__name__)


def create_redis(url: str = settings.REDIS_URL) -> Redis:
    return from_url(url, encoding="utf-8", decode_responses=True)


def day_key(day: Optional[date] = None) -> str:
    return (day or datetime.now(timezone.utc).date()).isoformat()


async def increment_event_counters(
    redis: Redis, events: Iterable[TrackedEvent], ttl: int = settings.COUNTER_TTL_SECONDS
) -> None:
    """HINCRBY the per-day, per-day-per-category and per-user-per-day counters in one round trip."""
    pipe = redis.pipeline(transaction=False)
    keys = set()
    for event in events:
        day = day_key(event.created_at.date())
        pipe.hincrby(f"metrics:{day}", "total_events", 1)
        pipe.hincrby(f"metrics:{day}:{event.event_category}", event.event_action, 1)
        keys.update((f"metrics:{day}", f"metrics:{day}:{event.event_category}"))
        if event.user_id:
            pipe.hincrby(f"user_metrics:{event.user_id}:{day}", event.event_action, 1)
            keys.add(f"user_metrics:{event.user_id}:{day}")
    for key in sorted(keys):
        pipe.expire(key, ttl)
    await pipe.execute()


async def push_performance_sample(redis: Redis, metric: PerformanceMetricCreate) -> None:
    key = f"perf:{day_key()}:{metric.metric_type}"
    sample = {
        "response_time": metric.response_time_ms,
        "status_code": metric.status_code,
        "timestamp": time.time(),
    }
    pipe = redis.pipeline(transaction=False)
    pipe.lpush(key, json.dumps(sample))
    pipe.ltrim(key, 0, settings.PERF_SAMPLE_LIMIT - 1)
    pipe.expire(key, settings.PERF_SAMPLE_TTL_SECONDS)
    await pipe.execute()


async def get_performance_samples(redis: Redis, metric_type: str = "api_response", limit: int = 100) -> List[dict]:
    raw = await redis.lrange(f"perf:{day_key()}:{metric_type}", 0, limit - 1)
    return [json.loads(item) for item in raw]


async def get_user_counters(redis: Redis, user_id: str, day: Optional[date] = None) -> Dict[str, int]:
    counters = await redis.hgetall(f"user_metrics:{user_id}:{day_key(day)}")
    return {action: int(value or 0) for action, value in counters.items()}


async def get_system_counters(redis: Redis, day: Optional[date] = None) -> Dict[str, int]:
    counters = await redis.hgetall(f"metrics:{day_key(day)}")
    return {name: int(value or 0) for name, value in counters.items()}


async def active_user_ids(redis: Redis, day: Optional[date] = None) -> List[str]:
    suffix = f":{day_key(day)}"
    user_ids = []
    async for key in redis.scan_iter(match=f"user_metrics:*{suffix}"):
        user_ids.append(key[len("user_metrics:"):-len(suffix)])
    return user_ids


async def get_cached_json(redis: Redis, key: str) -> Optional[Any]:
    try:
        cached = await redis.get(key)
    except RedisError as e:
        logger.warning(f"Cache read failed for {key}: {e}")
        return None
    return json.loads(cached) if cached else None


async def set_cached_json(redis: Redis, key: str, value: Any, ttl: int) -> None:
    try:
        await redis.set(key, json.dumps(value, default=str), ex=ttl)
    except RedisError as e:
        logger.warning(f"Cache write failed for {key}: {e}")
