from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import shared.models  # noqa: F401
from shared.database import Base
from shared.schemas import EventCreate


async def _empty_scan(*args, **kwargs):
    for item in ():
        yield item


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def mock_redis():
    redis = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    redis.pipeline.return_value = pipe
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.hgetall = AsyncMock(return_value={})
    redis.lrange = AsyncMock(return_value=[])
    redis.scan_iter = MagicMock(side_effect=_empty_scan)
    return redis


@pytest.fixture
def make_event():
    def factory(
        action: str = "create_task",
        category: str = "kanban",
        user_id: str = "user-1",
        created_at: datetime = None,
        **fields,
    ) -> EventCreate:
        return EventCreate(
            user_id=user_id,
            session_id=fields.pop("session_id", "session-1"),
            event_category=category,
            event_action=action,
            created_at=created_at or datetime.now(timezone.utc),
            **fields,
        )

    return factory
