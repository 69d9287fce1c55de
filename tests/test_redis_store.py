"""Tests for the Redis store (fakeredis) beyond the shared contract."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.asyncio.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from contextengine.config import RedisConfig
from contextengine.errors import BackendUnavailableError, ValidationError
from contextengine.interfaces import ContextFilter, ContextKind, ContextPatch
from contextengine.providers.base import ProviderStatus
from contextengine.providers.redis import RedisContextStore


class TestKeyLayout:
    """Primary and index keys written by mutations."""

    async def test_create_writes_record_and_indexes(self, redis_store, fake_redis, make_record):
        record = make_record(
            "Mapper", kind=ContextKind.BEST_PRACTICE, tags=["storage"], domain_category="token",
        )
        await redis_store.create(record)

        raw = await fake_redis.get(f"test:context:{record.id}")
        assert json.loads(raw)["title"] == "Mapper"
        assert await fake_redis.sismember("test:index:all", record.id)
        assert await fake_redis.sismember("test:index:kind:best_practice", record.id)
        assert await fake_redis.sismember("test:index:tag:storage", record.id)
        assert await fake_redis.sismember("test:index:category:token", record.id)
        assert await fake_redis.sismember("test:index:token:mapper", record.id)
        assert await fake_redis.sismember("test:registry:tokens", "mapper")

    async def test_text_query_fetches_only_token_matches(
        self, redis_store, fake_redis, make_record, monkeypatch
    ):
        records = [make_record(f"Filler {i}", content="ordinary body") for i in range(20)]
        needle = make_record("Haystack", content="find the needle here")
        await redis_store.batch_create(records + [needle])

        fetched = []
        original_mget = fake_redis.mget

        async def counting_mget(keys, *args):
            fetched.append(len(keys))
            return await original_mget(keys, *args)

        monkeypatch.setattr(fake_redis, "mget", counting_mget)

        found, total = await redis_store.query(ContextFilter(text_query="needle"))

        assert [r.id for r in found] == [needle.id]
        assert total == 1
        assert fetched == [1]

    async def test_update_moves_token_memberships(self, redis_store, fake_redis, make_record):
        record = make_record("Alpha", content="needle")
        await redis_store.create(record)

        await redis_store.update(record.id, ContextPatch(content="thread"))

        assert not await fake_redis.sismember("test:index:token:needle", record.id)
        assert await fake_redis.sismember("test:index:token:thread", record.id)
        assert await redis_store.verify() == []

    async def test_update_moves_index_memberships(self, redis_store, fake_redis, make_record):
        record = make_record("T", tags=["old", "kept"])
        await redis_store.create(record)

        await redis_store.update(record.id, ContextPatch(tags=["kept", "new"]))

        assert not await fake_redis.sismember("test:index:tag:old", record.id)
        assert await fake_redis.sismember("test:index:tag:kept", record.id)
        assert await fake_redis.sismember("test:index:tag:new", record.id)

    async def test_delete_clears_every_key(self, redis_store, fake_redis, make_record):
        record = make_record("T", tags=["a"], domain_category="token")
        await redis_store.create(record)

        await redis_store.delete(record.id)

        assert await fake_redis.exists(f"test:context:{record.id}") == 0
        assert await fake_redis.scard("test:index:all") == 0
        assert await fake_redis.scard("test:index:tag:a") == 0
        assert await fake_redis.scard("test:index:category:token") == 0

    async def test_prefixes_isolate_stores(self, ranker, fake_redis, make_record):
        first = RedisContextStore(RedisConfig(key_prefix="one"), ranker, client=fake_redis)
        second = RedisContextStore(RedisConfig(key_prefix="two"), ranker, client=fake_redis)
        await first.initialize()
        await second.initialize()

        await first.create(make_record("T"))

        assert await first.count() == 1
        assert await second.count() == 0


class TestConsistency:
    """Dangling index entries and repair."""

    async def test_read_prunes_dangling_entries(self, redis_store, fake_redis, make_record, caplog):
        record = make_record("T", tags=["a"])
        await redis_store.create(record)
        await fake_redis.delete(f"test:context:{record.id}")

        records, total = await redis_store.query(ContextFilter(tags=frozenset({"a"})))

        assert records == [] and total == 0
        assert not await fake_redis.sismember("test:index:tag:a", record.id)
        assert not await fake_redis.sismember("test:index:all", record.id)
        assert "Pruned dangling index entry" in caplog.text

    async def test_filtered_count_agrees_with_query_total(self, redis_store, fake_redis, make_record):
        kept = make_record("Kept", tags=["a"])
        lost = make_record("Lost", tags=["a"])
        await redis_store.batch_create([kept, lost])
        await fake_redis.delete(f"test:context:{lost.id}")
        tag_filter = ContextFilter(tags=frozenset({"a"}))

        assert await redis_store.count(tag_filter) == 1
        assert (await redis_store.query(tag_filter))[1] == 1
        assert not await fake_redis.sismember("test:index:tag:a", lost.id)

    async def test_verify_repairs_both_directions(self, redis_store, fake_redis, make_record):
        record = make_record("T", kind=ContextKind.OPTIMIZATION, tags=["a"])
        await redis_store.create(record)
        await fake_redis.sadd("test:index:tag:a", "ghost")
        await fake_redis.srem("test:index:kind:optimization", record.id)

        repaired = await redis_store.verify()

        assert repaired == sorted(["ghost", record.id])
        assert await fake_redis.smembers("test:index:tag:a") == {record.id}
        assert await fake_redis.sismember("test:index:kind:optimization", record.id)
        assert await redis_store.verify() == []

    async def test_stats_skip_emptied_registry_entries(self, redis_store, make_record):
        record = make_record("T", tags=["gone"], domain_category="nft")
        await redis_store.create(record)
        await redis_store.update(record.id, ContextPatch(tags=["here"], domain_category="token"))

        stats = await redis_store.stats()

        assert stats["by_tag"] == {"here": 1}
        assert stats["by_domain_category"] == {"token": 1}


class TestConcurrency:
    """Optimistic locking around mutations."""

    async def test_concurrent_creates_with_same_id(self, redis_store, make_record):
        record = make_record("T", tags=["a"])

        results = await asyncio.gather(
            *(redis_store.create(record) for _ in range(5)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r == record.id) == 1
        assert all(isinstance(r, ValidationError) for r in results if r != record.id)
        assert await redis_store.count() == 1

    async def test_concurrent_updates_and_deletes_keep_indexes_consistent(
        self, redis_store, make_record
    ):
        records = [make_record(f"R{i}", tags=["x"]) for i in range(10)]
        await redis_store.batch_create(records)

        await asyncio.gather(
            *(redis_store.update(r.id, ContextPatch(tags=["y"])) for r in records[:5]),
            *(redis_store.delete(r.id) for r in records[5:]),
        )

        assert await redis_store.count(ContextFilter(tags=frozenset({"y"}))) == 5
        assert await redis_store.count(ContextFilter(tags=frozenset({"x"}))) == 0
        assert await redis_store.verify() == []

    async def test_concurrent_creates_and_deletes_on_different_ids(
        self, redis_store, make_record
    ):
        existing = [make_record(f"Old {i}", tags=["shared"]) for i in range(5)]
        await redis_store.batch_create(existing)
        fresh = [make_record(f"New {i}", tags=["shared"]) for i in range(5)]

        await asyncio.gather(
            *(redis_store.create(r) for r in fresh),
            *(redis_store.delete(r.id) for r in existing),
        )

        found, total = await redis_store.query(ContextFilter(tags=frozenset({"shared"})))
        assert total == 5
        assert {r.id for r in found} == {r.id for r in fresh}
        assert await redis_store.count() == 5
        assert await redis_store.verify() == []


class TestLostReplies:
    """Transactions that commit but whose EXEC reply never arrives."""

    @pytest.fixture
    def lose_next_reply(self, monkeypatch):
        """Arm a one-shot fault: the next transactional EXEC commits, then fails."""
        original_execute = Pipeline.execute
        lost = []

        def arm():
            async def execute(pipe, *args, **kwargs):
                result = await original_execute(pipe, *args, **kwargs)
                if pipe.is_transaction and not lost:
                    lost.append(True)
                    raise RedisConnectionError("reply lost")
                return result

            monkeypatch.setattr(Pipeline, "execute", execute)
            return lost

        return arm

    async def test_create_reports_committed_write(self, redis_store, make_record, lose_next_reply):
        record = make_record("T", tags=["a"])
        lost = lose_next_reply()

        assert await redis_store.create(record) == record.id

        assert lost == [True]
        assert (await redis_store.get(record.id)).title == "T"
        assert await redis_store.count() == 1
        assert await redis_store.verify() == []

    async def test_batch_chunk_reports_committed_write(
        self, redis_store, make_record, lose_next_reply
    ):
        records = [make_record(f"R{i}") for i in range(3)]
        lost = lose_next_reply()

        ids = await redis_store.batch_create(records)

        assert lost == [True]
        assert ids == [r.id for r in records]
        assert await redis_store.count() == 3

    async def test_delete_reports_committed_removal(self, redis_store, make_record, lose_next_reply):
        record = make_record("T")
        await redis_store.create(record)
        lost = lose_next_reply()

        assert await redis_store.delete(record.id) is True

        assert lost == [True]
        assert await redis_store.count() == 0

    async def test_existing_id_is_still_rejected(
        self, redis_store, make_record, lose_next_reply
    ):
        record = make_record("T")
        await redis_store.create(record)
        lose_next_reply()

        with pytest.raises(ValidationError):
            await redis_store.create(record)


class TestFailures:
    """Timeouts, connection errors and retry policy."""

    @pytest.fixture
    def mock_store(self, ranker):
        config = RedisConfig(timeout_seconds=0.05, max_retries=2, backoff_base=0.0, backoff_max=0.0)
        store = RedisContextStore(config, ranker, client=MagicMock())
        return store

    async def test_timeouts_are_retried_then_surface(self, mock_store):
        mock_store._client.get = AsyncMock(side_effect=RedisTimeoutError("slow"))

        with pytest.raises(BackendUnavailableError) as exc_info:
            await mock_store.get("abc")

        assert exc_info.value.retryable is True
        assert mock_store._client.get.await_count == 3

    async def test_slow_command_hits_timeout(self, mock_store):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        mock_store._client.get = slow

        with pytest.raises(BackendUnavailableError):
            await mock_store.get("abc")

    async def test_transient_failure_recovers(self, mock_store, make_record):
        record = make_record("T")
        payload = json.dumps(record.to_dict())
        mock_store._client.get = AsyncMock(side_effect=[RedisConnectionError("reset"), payload])

        fetched = await mock_store.get(record.id)

        assert fetched.id == record.id

    async def test_other_redis_errors_are_not_retried(self, mock_store):
        mock_store._client.get = AsyncMock(side_effect=ResponseError("WRONGTYPE"))

        with pytest.raises(BackendUnavailableError) as exc_info:
            await mock_store.get("abc")

        assert exc_info.value.retryable is False
        assert mock_store._client.get.await_count == 1

    async def test_update_is_not_retried(self, mock_store):
        mock_store._transact = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(BackendUnavailableError):
            await mock_store.update("abc", ContextPatch(title="x"))

        assert mock_store._transact.await_count == 1

    async def test_delete_is_retried(self, mock_store):
        mock_store._transact = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(BackendUnavailableError):
            await mock_store.delete("abc")

        assert mock_store._transact.await_count == 3

    async def test_uninitialized_client(self, ranker):
        store = RedisContextStore(RedisConfig(), ranker)

        with pytest.raises(BackendUnavailableError):
            await store.get("abc")
        health = await store.health_check()
        assert health.status == ProviderStatus.UNAVAILABLE


class TestLifecycle:
    """Client ownership."""

    async def test_injected_client_survives_shutdown(self, ranker, fake_redis):
        store = RedisContextStore(RedisConfig(), ranker, client=fake_redis)
        await store.initialize()
        await store.shutdown()

        assert await fake_redis.ping()
