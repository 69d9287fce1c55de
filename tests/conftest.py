"""Pytest fixtures for Context Engine tests."""

from datetime import datetime, timedelta, timezone

import fakeredis
import fakeredis.aioredis
import pytest

from contextengine.config import EngineConfig, RedisConfig, StoreConfig
from contextengine.interfaces import ContextKind, ContextRecord
from contextengine.providers.memory import BoundedMemoryStore
from contextengine.providers.redis import RedisContextStore
from contextengine.services.ranker import RelevanceRanker


class TickingClock:
    """Clock that advances one second per reading.

    Stores stamp ``created_at`` themselves; a ticking clock makes the
    newest-first tie-break deterministic.
    """

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _make_record(
    title: str = "Untitled",
    kind: ContextKind = ContextKind.DOCUMENTATION,
    content: str = "",
    tags=None,
    **kwargs,
) -> ContextRecord:
    return ContextRecord(kind=kind, title=title, content=content, tags=tags or [], **kwargs)


@pytest.fixture
def clock():
    """Provide a ticking clock for store timestamps."""
    return TickingClock()


@pytest.fixture
def make_record():
    """Factory for context records with sensible defaults."""
    return _make_record


@pytest.fixture
def ranker():
    """Provide a ranker with default weights."""
    return RelevanceRanker()


@pytest.fixture
def fake_redis():
    """Provide an isolated fakeredis client."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_config():
    return RedisConfig(
        key_prefix="test",
        timeout_seconds=1.0,
        max_retries=2,
        backoff_base=0.0,
        backoff_max=0.0,
    )


@pytest.fixture
async def memory_store(ranker):
    """Provide an initialized bounded in-process store."""
    store = BoundedMemoryStore(StoreConfig(max_size=100, batch_chunk_size=10), ranker)
    store._now = TickingClock()
    await store.initialize()
    yield store
    await store.shutdown()


@pytest.fixture
async def redis_store(ranker, fake_redis, redis_config):
    """Provide an initialized Redis store backed by fakeredis."""
    store = RedisContextStore(redis_config, ranker, batch_chunk_size=10, client=fake_redis)
    store._now = TickingClock()
    await store.initialize()
    yield store
    await store.shutdown()
    await fake_redis.aclose()


@pytest.fixture(params=["memory", "redis"])
async def store(request, ranker, redis_config):
    """Each storage backend in turn, for contract tests."""
    if request.param == "memory":
        store = BoundedMemoryStore(StoreConfig(max_size=100, batch_chunk_size=10), ranker)
        client = None
    else:
        client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        store = RedisContextStore(redis_config, ranker, batch_chunk_size=10, client=client)
    store._now = TickingClock()
    await store.initialize()
    yield store
    await store.shutdown()
    if client is not None:
        await client.aclose()


@pytest.fixture
def test_config():
    return EngineConfig.for_testing()
