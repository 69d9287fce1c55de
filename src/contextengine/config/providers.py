"""Component-specific configuration classes."""

from dataclasses import dataclass
from enum import Enum


class BackendKind(Enum):
    """Available storage backends."""
    MEMORY = "memory"
    REDIS = "redis"


@dataclass
class StoreConfig:
    """Configuration shared by every storage backend.

    Attributes:
        backend: Which backend the engine uses for its lifetime
        max_size: Capacity of the bounded in-process store
        eviction: Evict the oldest record when full (False: reject writes)
        batch_chunk_size: Records per atomic chunk during batch ingest
    """
    backend: BackendKind = BackendKind.MEMORY
    max_size: int = 10000
    eviction: bool = True
    batch_chunk_size: int = 50


@dataclass
class RedisConfig:
    """Configuration for the Redis-backed store.

    Attributes:
        url: Connection target
        key_prefix: Namespace for every key the store writes
        timeout_seconds: Upper bound for a single Redis command
        max_retries: Retries for retryable operations after the first attempt
        backoff_base: Exponential backoff base (seconds)
        backoff_max: Maximum backoff delay (seconds)
    """
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "contextengine"
    timeout_seconds: float = 5.0
    max_retries: int = 3
    backoff_base: float = 0.1
    backoff_max: float = 2.0


@dataclass
class QueryConfig:
    """Pagination bounds applied by the retrieval service."""
    default_page_size: int = 10
    max_page_size: int = 100


@dataclass
class RankingConfig:
    """Relevance weights. All non-negative; the defaults sum to 1.0.

    Attributes:
        base_weight: Weight of the record's own base_score
        tag_weight: Weight of the filter tag overlap ratio
        kind_weight: Bonus for a matching kind
        category_weight: Bonus for a matching domain category
        text_weight: Weight of the query keyword overlap ratio
    """
    base_weight: float = 0.4
    tag_weight: float = 0.25
    kind_weight: float = 0.1
    category_weight: float = 0.1
    text_weight: float = 0.15

    def weights(self) -> dict[str, float]:
        return {
            "base_weight": self.base_weight,
            "tag_weight": self.tag_weight,
            "kind_weight": self.kind_weight,
            "category_weight": self.category_weight,
            "text_weight": self.text_weight,
        }
