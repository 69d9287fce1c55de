"""Dependency injection container for the Context Engine."""

from typing import TYPE_CHECKING, Any, Optional
import logging

from ..config import EngineConfig
from ..providers.base import ContextStoreProvider, ProviderHealth

if TYPE_CHECKING:
    from ..services.ranker import RelevanceRanker

logger = logging.getLogger(__name__)


def create_store(
    config: EngineConfig,
    ranker: "RelevanceRanker",
    redis_client: Optional[Any] = None,
) -> ContextStoreProvider:
    """Create the storage backend named by the configuration.

    Args:
        config: Engine configuration
        ranker: Ranker the store orders query results with
        redis_client: Optional pre-built Redis client for the redis backend

    Raises:
        ValueError: If the backend is unknown
    """
    from ..config.providers import BackendKind
    from ..providers.memory import BoundedMemoryStore
    from ..providers.redis import RedisContextStore

    backend = config.store.backend

    if backend == BackendKind.MEMORY:
        return BoundedMemoryStore(config.store, ranker)
    elif backend == BackendKind.REDIS:
        return RedisContextStore(
            config.redis,
            ranker,
            batch_chunk_size=config.store.batch_chunk_size,
            client=redis_client,
        )
    else:
        raise ValueError(f"Unknown storage backend: {backend}")


class Container:
    """Dependency injection container.

    Creates the ranker and the storage backend once, in dependency order,
    and keeps them for the process lifetime. The backend is never swapped
    after initialization.

    Usage:
        container = Container(config)
        await container.initialize()

        store = container.store
        ranker = container.ranker

        await container.shutdown()
    """

    def __init__(self, config: EngineConfig, redis_client: Optional[Any] = None):
        self.config = config
        self._redis_client = redis_client
        self._ranker: Optional["RelevanceRanker"] = None
        self._store: Optional[ContextStoreProvider] = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the ranker, then the store that depends on it."""
        if self._initialized:
            return

        from ..services.ranker import create_ranker

        logger.info(f"Initializing container (backend: {self.config.store.backend.value})")

        self._ranker = create_ranker(self.config.ranking)
        self._store = create_store(self.config, self._ranker, self._redis_client)
        await self._store.initialize()

        self._initialized = True
        logger.info("Container initialized successfully")

    async def shutdown(self) -> None:
        """Shutdown the store gracefully."""
        if not self._initialized:
            return

        logger.info("Shutting down container")
        await self._store.shutdown()
        self._initialized = False
        logger.info("Container shutdown complete")

    async def health_check(self) -> dict[str, ProviderHealth]:
        """Check health of all providers."""
        results = {}
        if self._store:
            results["store"] = await self._store.health_check()
        return results

    @property
    def store(self) -> ContextStoreProvider:
        """Get the storage backend."""
        if not self._store:
            raise RuntimeError("Container not initialized. Call initialize() first.")
        return self._store

    @property
    def ranker(self) -> "RelevanceRanker":
        """Get the relevance ranker."""
        if not self._ranker:
            raise RuntimeError("Container not initialized. Call initialize() first.")
        return self._ranker

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
