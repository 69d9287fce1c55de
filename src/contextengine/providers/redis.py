"""Redis storage provider.

Layout (``p`` is the configured key prefix):

    p:context:{id}           JSON-encoded record
    p:index:all              set of every stored id
    p:index:kind:{kind}      ids per kind
    p:index:tag:{tag}        ids per tag
    p:index:category:{cat}   ids per domain category
    p:index:token:{tok}      ids per searchable text token
    p:registry:tags          every tag name ever indexed
    p:registry:categories    every domain category ever indexed
    p:registry:tokens        every text token ever indexed

Filtered queries combine index sets and fetch only the candidates with a
single MGET; the keyspace is never enumerated. Every mutation writes the
record and all of its index changes in one WATCH/MULTI/EXEC transaction.

When the reply to an EXEC is lost, the transaction may or may not have
committed. Retried creates compare the stored value with the one they
sent, and retried deletes treat an already missing record as removed.
"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from .base import (
    ContextStoreProvider,
    ProviderHealth,
    ProviderStatus,
    record_matches,
)
from ..config.providers import RedisConfig
from ..errors import (
    BackendUnavailableError,
    IndexInconsistencyError,
    NotFoundError,
    ValidationError,
)
from ..interfaces import ContextFilter, ContextKind, ContextPatch, ContextRecord
from ..utils import searchable_tokens, tokenize

if TYPE_CHECKING:
    from ..services.ranker import RelevanceRanker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Optimistic-lock conflicts tolerated before a mutation gives up
MAX_WATCH_CONFLICTS = 5


class _Commit:
    """Tracks whether an EXEC was sent without its reply coming back."""

    def __init__(self):
        self.uncertain = False

    async def execute(self, pipe) -> list:
        try:
            return await pipe.execute()
        except (asyncio.CancelledError, RedisTimeoutError, RedisConnectionError):
            self.uncertain = True
            raise


class RedisContextStore(ContextStoreProvider[RedisConfig]):
    """Redis-backed context store with set-based secondary indexes."""

    def __init__(
        self,
        config: RedisConfig,
        ranker: "RelevanceRanker",
        batch_chunk_size: int = 50,
        client: Optional[redis.Redis] = None,
    ):
        """Initialize store.

        Args:
            config: Connection, timeout and retry settings
            ranker: Ranker used to order query results
            batch_chunk_size: Records per MULTI/EXEC during batch ingest
            client: Pre-built client (tests pass a fakeredis instance).
                An injected client is not closed on shutdown.
        """
        super().__init__(config, ranker, batch_chunk_size=batch_chunk_size)
        self._client = client
        self._owns_client = client is None
        self._prefix = config.key_prefix

    # -- keys ---------------------------------------------------------------

    def _record_key(self, context_id: str) -> str:
        return f"{self._prefix}:context:{context_id}"

    @property
    def _all_key(self) -> str:
        return f"{self._prefix}:index:all"

    def _kind_key(self, kind: ContextKind) -> str:
        return f"{self._prefix}:index:kind:{kind.value}"

    def _tag_key(self, tag: str) -> str:
        return f"{self._prefix}:index:tag:{tag}"

    def _category_key(self, category: str) -> str:
        return f"{self._prefix}:index:category:{category}"

    def _token_key(self, token: str) -> str:
        return f"{self._prefix}:index:token:{token}"

    @property
    def _tag_registry_key(self) -> str:
        return f"{self._prefix}:registry:tags"

    @property
    def _category_registry_key(self) -> str:
        return f"{self._prefix}:registry:categories"

    @property
    def _token_registry_key(self) -> str:
        return f"{self._prefix}:registry:tokens"

    def _index_keys(self, record: ContextRecord) -> set[str]:
        """Every index set the record belongs to, except the all-ids set."""
        keys = {self._kind_key(record.kind)}
        keys.update(self._tag_key(tag) for tag in record.tags)
        if record.domain_category:
            keys.add(self._category_key(record.domain_category))
        keys.update(self._token_key(token) for token in searchable_tokens(record))
        return keys

    # -- lifecycle ----------------------------------------------------------

    async def initialize(self) -> None:
        if self._client is None:
            self._client = redis.from_url(
                self.config.url,
                decode_responses=True,
                socket_timeout=self.config.timeout_seconds,
                socket_connect_timeout=self.config.timeout_seconds,
            )
        await self._call("ping", lambda: self._client.ping())
        logger.info("Redis context store connected (prefix: %s)", self._prefix)
        self._initialized = True

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._initialized = False

    async def health_check(self) -> ProviderHealth:
        if self._client is None:
            return ProviderHealth(
                status=ProviderStatus.UNAVAILABLE,
                message="Client not initialized"
            )

        try:
            start = time.perf_counter()
            count = await self._call("health", lambda: self._client.scard(self._all_key), retry=False)
            latency = (time.perf_counter() - start) * 1000
            return ProviderHealth(
                status=ProviderStatus.HEALTHY,
                latency_ms=latency,
                message=f"Redis store with {count} contexts"
            )
        except BackendUnavailableError as e:
            return ProviderHealth(
                status=ProviderStatus.UNAVAILABLE,
                message=str(e)
            )

    # -- command execution --------------------------------------------------

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        retry: bool = True,
    ) -> T:
        """Run a Redis call with the configured timeout and bounded retries.

        Timeouts and connection failures are retried with exponential
        backoff when ``retry`` is set, then surface as
        BackendUnavailableError. Other Redis errors are not retried.
        """
        if self._client is None:
            raise BackendUnavailableError("Redis client not initialized", retryable=False)

        attempts = 1 + (self.config.max_retries if retry else 0)
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(fn(), timeout=self.config.timeout_seconds)
            except (asyncio.TimeoutError, RedisTimeoutError, RedisConnectionError) as e:
                last_error = e
                if attempt + 1 < attempts:
                    backoff = min(self.config.backoff_base * (2 ** attempt), self.config.backoff_max)
                    logger.debug(
                        "Redis %s failed (attempt %d/%d): %s; retrying in %.2fs",
                        operation, attempt + 1, attempts, e, backoff,
                    )
                    await asyncio.sleep(backoff)
            except RedisError as e:
                raise BackendUnavailableError(f"Redis {operation} failed: {e}", retryable=False) from e

        raise BackendUnavailableError(
            f"Redis {operation} failed after {attempts} attempt(s): {last_error!r}"
        ) from last_error

    async def _transact(self, operation: str, body: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``body(pipe)`` as a WATCH/MULTI/EXEC transaction.

        The body watches the keys it reads, then calls ``pipe.multi()`` and
        queues its writes. A concurrent change to a watched key restarts
        the body.
        """
        for attempt in range(MAX_WATCH_CONFLICTS):
            try:
                async with self._client.pipeline(transaction=True) as pipe:
                    return await body(pipe)
            except WatchError:
                logger.debug("Redis %s conflicted with a concurrent write (attempt %d)", operation, attempt + 1)
        raise BackendUnavailableError(
            f"Redis {operation} kept conflicting with concurrent writes"
        )

    @staticmethod
    def _encode(record: ContextRecord) -> str:
        return json.dumps(record.to_dict())

    @staticmethod
    def _decode(raw: str) -> ContextRecord:
        return ContextRecord.from_dict(json.loads(raw))

    def _queue_index_adds(self, pipe, record: ContextRecord, keys: set[str]) -> None:
        for key in sorted(keys):
            pipe.sadd(key, record.id)
        if record.tags:
            pipe.sadd(self._tag_registry_key, *record.tags)
        if record.domain_category:
            pipe.sadd(self._category_registry_key, record.domain_category)
        tokens = searchable_tokens(record)
        if tokens:
            pipe.sadd(self._token_registry_key, *sorted(tokens))

    # -- store operations ---------------------------------------------------

    async def create(self, record: ContextRecord) -> str:
        stored = self._stamp_new(record)
        key = self._record_key(stored.id)
        encoded = self._encode(stored)
        commit = _Commit()

        async def body(pipe) -> str:
            await pipe.watch(key)
            current = await pipe.get(key)
            if current is not None:
                if commit.uncertain and current == encoded:
                    return stored.id
                raise ValidationError(f"Context id {stored.id} already exists")
            pipe.multi()
            pipe.set(key, encoded)
            pipe.sadd(self._all_key, stored.id)
            self._queue_index_adds(pipe, stored, self._index_keys(stored))
            await commit.execute(pipe)
            return stored.id

        return await self._call("create", lambda: self._transact("create", body))

    async def _create_chunk(self, records: list[ContextRecord]) -> list[str]:
        stored = [self._stamp_new(r) for r in records]
        ids = [r.id for r in stored]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate context ids within batch")
        keys = [self._record_key(i) for i in ids]
        encoded = [self._encode(r) for r in stored]
        commit = _Commit()

        async def body(pipe) -> list[str]:
            await pipe.watch(*keys)
            current = await pipe.mget(keys)
            if any(value is not None for value in current):
                if commit.uncertain and list(current) == encoded:
                    return ids
                raise ValidationError("Batch contains context ids that already exist")
            pipe.multi()
            for record, key, value in zip(stored, keys, encoded):
                pipe.set(key, value)
                pipe.sadd(self._all_key, record.id)
                self._queue_index_adds(pipe, record, self._index_keys(record))
            await commit.execute(pipe)
            return ids

        return await self._call("batch_create", lambda: self._transact("batch_create", body))

    async def get(self, context_id: str) -> ContextRecord:
        raw = await self._call("get", lambda: self._client.get(self._record_key(context_id)))
        if raw is None:
            raise NotFoundError(context_id)
        return self._decode(raw)

    async def update(self, context_id: str, patch: ContextPatch) -> ContextRecord:
        key = self._record_key(context_id)

        async def body(pipe) -> ContextRecord:
            await pipe.watch(key)
            raw = await pipe.get(key)
            if raw is None:
                raise NotFoundError(context_id)
            existing = self._decode(raw)
            updated = patch.apply(existing, self._now())
            old_keys = self._index_keys(existing)
            new_keys = self._index_keys(updated)
            pipe.multi()
            pipe.set(key, self._encode(updated))
            for stale in sorted(old_keys - new_keys):
                pipe.srem(stale, context_id)
            self._queue_index_adds(pipe, updated, new_keys - old_keys)
            await pipe.execute()
            return updated

        return await self._call("update", lambda: self._transact("update", body), retry=False)

    async def delete(self, context_id: str) -> bool:
        key = self._record_key(context_id)
        commit = _Commit()

        async def body(pipe) -> bool:
            await pipe.watch(key)
            raw = await pipe.get(key)
            if raw is None:
                return commit.uncertain
            existing = self._decode(raw)
            pipe.multi()
            pipe.delete(key)
            pipe.srem(self._all_key, context_id)
            for index_key in sorted(self._index_keys(existing)):
                pipe.srem(index_key, context_id)
            await commit.execute(pipe)
            return True

        return await self._call("delete", lambda: self._transact("delete", body))

    # -- reads --------------------------------------------------------------

    def _field_keys(self, filter: ContextFilter) -> list[list[str]]:
        """Index keys per supplied filter field; keys in a group are alternatives."""
        groups = []
        if filter.kinds:
            groups.append(sorted(self._kind_key(k) for k in filter.kinds))
        if filter.tags:
            groups.append(sorted(self._tag_key(t) for t in filter.tags))
        if filter.domain_category:
            groups.append([self._category_key(filter.domain_category)])
        tokens = tokenize(filter.text_query or "")
        if tokens:
            groups.append(sorted(self._token_key(t) for t in tokens))
        return groups

    async def _candidate_ids(self, filter: ContextFilter) -> tuple[set[str], list[str]]:
        """Matching ids from the indexes plus the keys consulted.

        Only an unfiltered query reads the all-ids set.
        """
        groups = self._field_keys(filter)
        if not groups:
            ids = await self._call("smembers", lambda: self._client.smembers(self._all_key))
            return set(ids), [self._all_key]

        async def fetch_groups() -> list:
            pipe = self._client.pipeline(transaction=False)
            for keys in groups:
                pipe.sunion(keys)
            return await pipe.execute()

        sets = [set(s) for s in await self._call("sunion", fetch_groups)]
        consulted = [key for keys in groups for key in keys]
        if filter.match == "any":
            return set().union(*sets), consulted
        sets.sort(key=len)
        return sets[0].intersection(*sets[1:]), consulted

    async def _fetch(self, ids: set[str], consulted: list[str]) -> list[ContextRecord]:
        """MGET records by id, pruning index entries whose record is gone."""
        if not ids:
            return []
        ordered = sorted(ids)
        values = await self._call(
            "mget", lambda: self._client.mget([self._record_key(i) for i in ordered])
        )
        records = []
        missing = []
        for context_id, raw in zip(ordered, values):
            if raw is None:
                missing.append(context_id)
            else:
                records.append(self._decode(raw))
        if missing:
            await self._prune(missing, consulted)
        return records

    async def _prune(self, missing: list[str], index_keys: list[str]) -> None:
        """Remove dangling ids from the given index sets and the all-ids set.

        A record deleted between the index read and the MGET is already gone
        from its indexes; only removals that actually happen are reported.
        """
        keys = sorted(set(index_keys) | {self._all_key})

        async def srem_all() -> list:
            pipe = self._client.pipeline(transaction=False)
            for context_id in missing:
                for key in keys:
                    pipe.srem(key, context_id)
            return await pipe.execute()

        removed = await self._call("prune", srem_all)
        for i, context_id in enumerate(missing):
            hits = [keys[j] for j, n in enumerate(removed[i * len(keys):(i + 1) * len(keys)]) if n]
            if hits:
                error = IndexInconsistencyError(context_id, hits)
                logger.warning("Pruned dangling index entry: %s", error)

    async def query(self, filter: ContextFilter) -> tuple[list[ContextRecord], int]:
        ids, consulted = await self._candidate_ids(filter)
        records = await self._fetch(ids, consulted)
        matched = [r for r in records if record_matches(r, filter)]
        return self._order_and_page(matched, filter)

    async def count(self, filter: Optional[ContextFilter] = None) -> int:
        """Count matching records.

        A filtered count fetches its candidates, pruning dangling entries
        as ``query`` does, so it always equals ``query(...)[1]``. The
        unfiltered count is the size of the all-ids set and includes
        dangling ids until a read or ``verify`` prunes them.
        """
        if filter is None or filter.is_unfiltered:
            return await self._call("scard", lambda: self._client.scard(self._all_key))

        ids, consulted = await self._candidate_ids(filter)
        records = await self._fetch(ids, consulted)
        return sum(1 for r in records if record_matches(r, filter))

    async def stats(self) -> dict[str, Any]:
        tags, categories = await self._call("registry", self._read_registries)
        kinds = list(ContextKind)

        async def cardinalities() -> list:
            pipe = self._client.pipeline(transaction=False)
            pipe.scard(self._all_key)
            for kind in kinds:
                pipe.scard(self._kind_key(kind))
            for tag in tags:
                pipe.scard(self._tag_key(tag))
            for category in categories:
                pipe.scard(self._category_key(category))
            return await pipe.execute()

        counts = await self._call("stats", cardinalities)
        total, rest = counts[0], counts[1:]
        kind_counts = rest[:len(kinds)]
        tag_counts = rest[len(kinds):len(kinds) + len(tags)]
        category_counts = rest[len(kinds) + len(tags):]
        return {
            "total": total,
            "by_kind": {k.value: n for k, n in zip(kinds, kind_counts) if n},
            "by_tag": {t: n for t, n in zip(tags, tag_counts) if n},
            "by_domain_category": {c: n for c, n in zip(categories, category_counts) if n},
        }

    async def _read_registries(self) -> tuple[list[str], list[str]]:
        pipe = self._client.pipeline(transaction=False)
        pipe.smembers(self._tag_registry_key)
        pipe.smembers(self._category_registry_key)
        tags, categories = await pipe.execute()
        return sorted(tags), sorted(categories)

    async def _read_tokens(self) -> list[str]:
        return sorted(await self._client.smembers(self._token_registry_key))

    async def verify(self) -> list[str]:
        """Audit every index set against the primary records.

        Dangling ids are removed from the sets that hold them; records
        missing from one of their own index sets are added back.
        """
        tags, categories = await self._call("registry", self._read_registries)
        tokens = await self._call("registry", self._read_tokens)
        index_keys = [self._all_key]
        index_keys += [self._kind_key(k) for k in ContextKind]
        index_keys += [self._tag_key(t) for t in tags]
        index_keys += [self._category_key(c) for c in categories]
        index_keys += [self._token_key(t) for t in tokens]

        async def members() -> list:
            pipe = self._client.pipeline(transaction=False)
            for key in index_keys:
                pipe.smembers(key)
            return await pipe.execute()

        memberships = dict(zip(index_keys, [set(m) for m in await self._call("verify", members)]))
        indexed_ids = set().union(*memberships.values())
        ordered = sorted(indexed_ids)
        values = await self._call(
            "mget", lambda: self._client.mget([self._record_key(i) for i in ordered])
        ) if ordered else []
        present = {i: self._decode(raw) for i, raw in zip(ordered, values) if raw is not None}

        repaired: set[str] = set()
        dangling = [(key, i) for key, ids in memberships.items() for i in ids if i not in present]
        missing = []
        for record in present.values():
            for key in self._index_keys(record) | {self._all_key}:
                if record.id not in memberships.get(key, ()):
                    missing.append((key, record))

        if dangling or missing:
            async def repair() -> list:
                pipe = self._client.pipeline(transaction=True)
                for key, context_id in dangling:
                    pipe.srem(key, context_id)
                for key, record in missing:
                    pipe.sadd(key, record.id)
                return await pipe.execute()

            await self._call("repair", repair, retry=False)
            for key, context_id in dangling:
                logger.warning("Pruned dangling index entry: %s", IndexInconsistencyError(context_id, [key]))
                repaired.add(context_id)
            for key, record in missing:
                logger.warning("Restored missing index entry %s for context %s", key, record.id)
                repaired.add(record.id)
        return sorted(repaired)
