"""Bounded in-process storage provider."""

import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Optional

from .base import (
    ContextStoreProvider,
    ProviderHealth,
    ProviderStatus,
    record_matches,
)
from ..config.providers import StoreConfig
from ..errors import CapacityExceededError, NotFoundError, ValidationError
from ..interfaces import ContextFilter, ContextKind, ContextPatch, ContextRecord
from ..utils import searchable_tokens, tokenize

if TYPE_CHECKING:
    from ..services.ranker import RelevanceRanker

logger = logging.getLogger(__name__)


class BoundedMemoryStore(ContextStoreProvider[StoreConfig]):
    """In-memory store with incremental indexes and FIFO eviction.

    Records live in an insertion-ordered map, which is also ``created_at``
    order because the store assigns creation timestamps itself. Kind, tag,
    domain category and text token indexes are updated on every mutation,
    so filtered queries touch only the matching ids.

    Every mutation runs its primary and index changes under one lock.
    Readers take the same lock only to snapshot candidate records; stored
    records are replaced on update, never modified in place, so a snapshot
    stays consistent after the lock is released.
    """

    def __init__(self, config: StoreConfig, ranker: "RelevanceRanker"):
        super().__init__(config, ranker, batch_chunk_size=config.batch_chunk_size)
        self._records: OrderedDict[str, ContextRecord] = OrderedDict()
        self._by_kind: dict[ContextKind, set[str]] = {}
        self._by_tag: dict[str, set[str]] = {}
        self._by_category: dict[str, set[str]] = {}
        self._by_token: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._evictions = 0

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        with self._lock:
            self._records.clear()
            self._by_kind.clear()
            self._by_tag.clear()
            self._by_category.clear()
            self._by_token.clear()
        self._initialized = False

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(
            status=ProviderStatus.HEALTHY,
            latency_ms=0.1,
            message=f"In-memory store with {len(self._records)}/{self.config.max_size} contexts"
        )

    @property
    def max_size(self) -> int:
        return self.config.max_size

    @property
    def evictions(self) -> int:
        """Number of records evicted since start."""
        return self._evictions

    # -- index maintenance (callers hold the lock) --------------------------

    @staticmethod
    def _add(index: dict, key, context_id: str) -> None:
        index.setdefault(key, set()).add(context_id)

    @staticmethod
    def _discard(index: dict, key, context_id: str) -> None:
        ids = index.get(key)
        if ids is None:
            return
        ids.discard(context_id)
        if not ids:
            del index[key]

    def _index(self, record: ContextRecord) -> None:
        self._add(self._by_kind, record.kind, record.id)
        for tag in record.tags:
            self._add(self._by_tag, tag, record.id)
        if record.domain_category:
            self._add(self._by_category, record.domain_category, record.id)
        for token in searchable_tokens(record):
            self._add(self._by_token, token, record.id)

    def _unindex(self, record: ContextRecord) -> None:
        self._discard(self._by_kind, record.kind, record.id)
        for tag in record.tags:
            self._discard(self._by_tag, tag, record.id)
        if record.domain_category:
            self._discard(self._by_category, record.domain_category, record.id)
        for token in searchable_tokens(record):
            self._discard(self._by_token, token, record.id)

    def _evict_oldest(self) -> None:
        _, oldest = self._records.popitem(last=False)
        self._unindex(oldest)
        self._evictions += 1
        logger.debug("Evicted oldest context %s (capacity %d)", oldest.id, self.config.max_size)

    def _admit(self, record: ContextRecord) -> str:
        while len(self._records) >= self.config.max_size:
            if not self.config.eviction:
                raise CapacityExceededError(self.config.max_size)
            self._evict_oldest()
        stored = self._stamp_new(record)
        self._records[stored.id] = stored
        self._index(stored)
        return stored.id

    # -- store operations ---------------------------------------------------

    async def create(self, record: ContextRecord) -> str:
        with self._lock:
            if record.id in self._records:
                raise ValidationError(f"Context id {record.id} already exists")
            return self._admit(record)

    async def _create_chunk(self, records: list[ContextRecord]) -> list[str]:
        """Store one chunk under the lock.

        With eviction on, a chunk larger than ``max_size`` evicts its own
        earliest records; their ids are still returned as committed.
        """
        with self._lock:
            ids = [r.id for r in records]
            if len(set(ids)) != len(ids):
                raise ValidationError("Duplicate context ids within batch")
            existing = [i for i in ids if i in self._records]
            if existing:
                raise ValidationError(f"Context id {existing[0]} already exists")
            if not self.config.eviction and len(self._records) + len(records) > self.config.max_size:
                raise CapacityExceededError(self.config.max_size)
            if len(records) > self.config.max_size:
                logger.warning(
                    "Batch chunk of %d contexts exceeds capacity %d; its first %d are evicted by later ones",
                    len(records), self.config.max_size, len(records) - self.config.max_size,
                )
            return [self._admit(r) for r in records]

    async def get(self, context_id: str) -> ContextRecord:
        with self._lock:
            record = self._records.get(context_id)
        if record is None:
            raise NotFoundError(context_id)
        return record.copy()

    async def update(self, context_id: str, patch: ContextPatch) -> ContextRecord:
        with self._lock:
            existing = self._records.get(context_id)
            if existing is None:
                raise NotFoundError(context_id)
            updated = patch.apply(existing, self._now())
            self._unindex(existing)
            self._records[context_id] = updated
            self._index(updated)
        return updated.copy()

    async def delete(self, context_id: str) -> bool:
        with self._lock:
            record = self._records.pop(context_id, None)
            if record is None:
                return False
            self._unindex(record)
        return True

    def _candidate_ids(self, filter: ContextFilter) -> set[str]:
        """Ids matching the filter, from the indexes alone (lock held)."""
        index_sets = []
        if filter.kinds:
            index_sets.append(set().union(*(self._by_kind.get(k, ()) for k in filter.kinds)))
        if filter.tags:
            index_sets.append(set().union(*(self._by_tag.get(t, ()) for t in filter.tags)))
        if filter.domain_category:
            index_sets.append(set(self._by_category.get(filter.domain_category, ())))
        tokens = tokenize(filter.text_query or "")
        if tokens:
            index_sets.append(set().union(*(self._by_token.get(t, ()) for t in tokens)))

        if not index_sets:
            return set(self._records)
        if filter.match == "any":
            return set().union(*index_sets)
        index_sets.sort(key=len)
        return index_sets[0].intersection(*index_sets[1:])

    def _snapshot(self, filter: ContextFilter) -> list[ContextRecord]:
        with self._lock:
            return [self._records[i] for i in self._candidate_ids(filter)]

    async def query(self, filter: ContextFilter) -> tuple[list[ContextRecord], int]:
        candidates = self._snapshot(filter)
        matched = [r for r in candidates if record_matches(r, filter)]
        page, total = self._order_and_page(matched, filter)
        return [r.copy() for r in page], total

    async def count(self, filter: Optional[ContextFilter] = None) -> int:
        if filter is None or filter.is_unfiltered:
            return len(self._records)
        with self._lock:
            return len(self._candidate_ids(filter))

    async def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total": len(self._records),
                "by_kind": {k.value: len(ids) for k, ids in self._by_kind.items()},
                "by_tag": {t: len(ids) for t, ids in self._by_tag.items()},
                "by_domain_category": {c: len(ids) for c, ids in self._by_category.items()},
            }

    async def verify(self) -> list[str]:
        repaired: set[str] = set()
        with self._lock:
            for index in (self._by_kind, self._by_tag, self._by_category, self._by_token):
                for key in list(index):
                    for context_id in list(index[key]):
                        if context_id not in self._records:
                            self._discard(index, key, context_id)
                            repaired.add(context_id)
            for record in self._records.values():
                slots = [(self._by_kind, record.kind)]
                slots += [(self._by_tag, tag) for tag in record.tags]
                if record.domain_category:
                    slots.append((self._by_category, record.domain_category))
                slots += [(self._by_token, token) for token in searchable_tokens(record)]
                for index, key in slots:
                    if record.id not in index.get(key, ()):
                        self._add(index, key, record.id)
                        repaired.add(record.id)
        if repaired:
            logger.warning("Repaired index entries for %d contexts", len(repaired))
        return sorted(repaired)
