"""Abstract base classes for storage providers.

These define the lifecycle every provider shares and the filtering,
ordering and chunking rules every store applies, so that interchangeable
backends return identical results.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Generic, Iterator, Optional, TypeVar

from ..errors import BatchIngestError, ContextEngineError
from ..interfaces import ContextFilter, ContextRecord, IContextStore
from ..utils import searchable_tokens, tokenize

if TYPE_CHECKING:
    from ..services.ranker import RelevanceRanker

logger = logging.getLogger(__name__)

# Type variable for provider-specific configuration
TConfig = TypeVar('TConfig')


class ProviderStatus(Enum):
    """Provider health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    INITIALIZING = "initializing"


@dataclass
class ProviderHealth:
    """Health check result for a provider."""
    status: ProviderStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    last_check: datetime = None

    def __post_init__(self):
        if self.last_check is None:
            self.last_check = datetime.now(timezone.utc)


class Provider(ABC, Generic[TConfig]):
    """Base class for all providers.

    Provides common functionality:
    - Configuration management
    - Health checking
    - Lifecycle management (init/shutdown)
    """

    def __init__(self, config: TConfig):
        self.config = config
        self._initialized = False

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the provider. Called once before first use."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Gracefully shutdown the provider."""
        pass

    @abstractmethod
    async def health_check(self) -> ProviderHealth:
        """Check provider health and connectivity."""
        pass

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def __aenter__(self):
        if not self._initialized:
            await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()


def text_matches(record: ContextRecord, tokens: set[str]) -> bool:
    """True if the record contains at least one of the query tokens."""
    return bool(tokens & searchable_tokens(record))


def record_matches(record: ContextRecord, filter: ContextFilter) -> bool:
    """Apply a filter to a single record.

    Only supplied fields take part. With ``match="all"`` every supplied
    field must match, with ``match="any"`` one is enough. A filter with no
    supplied fields matches everything.
    """
    checks = []
    if filter.kinds:
        checks.append(lambda: record.kind in filter.kinds)
    if filter.tags:
        checks.append(lambda: any(tag in filter.tags for tag in record.tags))
    if filter.domain_category:
        checks.append(lambda: record.domain_category == filter.domain_category)
    tokens = tokenize(filter.text_query or "")
    if tokens:
        checks.append(lambda: text_matches(record, tokens))

    if not checks:
        return True
    if filter.match == "any":
        return any(check() for check in checks)
    return all(check() for check in checks)


def chunked(records: list[ContextRecord], size: int) -> Iterator[list[ContextRecord]]:
    """Yield consecutive chunks of at most ``size`` records."""
    for start in range(0, len(records), size):
        yield records[start:start + size]


class ContextStoreProvider(Provider[TConfig], IContextStore):
    """Abstract context store.

    Implementations keep a primary record store plus kind/tag/domain
    category indexes, and must keep the two consistent on every mutation.
    They receive the ranker so that ``query`` returns records in the
    shared ordering.
    """

    def __init__(self, config: TConfig, ranker: "RelevanceRanker", batch_chunk_size: int = 50):
        super().__init__(config)
        self._ranker = ranker
        self._batch_chunk_size = max(1, batch_chunk_size)

    @property
    def ranker(self) -> "RelevanceRanker":
        return self._ranker

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _stamp_new(self, record: ContextRecord) -> ContextRecord:
        """Copy a record for storage with fresh creation timestamps."""
        stored = record.copy()
        now = self._now()
        stored.created_at = now
        stored.updated_at = now
        return stored

    def _order_and_page(
        self, records: list[ContextRecord], filter: ContextFilter
    ) -> tuple[list[ContextRecord], int]:
        """Order matched records and cut out the requested page."""
        ranked = sorted(records, key=lambda r: self._ranker.sort_key(r, filter))
        start = max(filter.offset, 0)
        return ranked[start:start + filter.limit], len(ranked)

    @abstractmethod
    async def _create_chunk(self, records: list[ContextRecord]) -> list[str]:
        """Store one chunk atomically: all records or none."""

    async def batch_create(self, records: list[ContextRecord]) -> list[str]:
        committed: list[str] = []
        for index, chunk in enumerate(chunked(list(records), self._batch_chunk_size)):
            try:
                ids = await self._create_chunk(chunk)
            except ContextEngineError as e:
                logger.warning(
                    "Batch chunk %d failed (%d contexts committed so far): %s",
                    index, len(committed), e,
                )
                raise BatchIngestError(committed, index, e) from e
            committed.extend(ids)
            logger.debug("Committed batch chunk %d (%d contexts)", index, len(ids))
        return committed
