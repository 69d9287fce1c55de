"""Engine-wide configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .providers import (
    BackendKind,
    QueryConfig,
    RankingConfig,
    RedisConfig,
    StoreConfig,
)

MAX_BATCH_CHUNK_SIZE = 1000


@dataclass
class EngineConfig:
    """Complete engine configuration.

    Combines all component configurations into a single object.
    Can be loaded from a YAML file, a dict or environment variables, or
    constructed programmatically.

    Attributes:
        store: Backend selection, capacity and batch chunking
        redis: Redis connection settings (used by the redis backend)
        query: Default and maximum page size
        ranking: Relevance weights
        seed_paths: Seed files ingested when the service starts
        debug: Enable debug logging
    """
    store: StoreConfig = field(default_factory=StoreConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    seed_paths: list[str] = field(default_factory=list)
    debug: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        """Load configuration from a YAML file. A missing file yields defaults."""
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create configuration from a dictionary."""
        store_data = dict(data.get("store", {}) or {})
        redis_data = data.get("redis", {}) or {}
        query_data = data.get("query", {}) or {}
        ranking_data = data.get("ranking", {}) or {}

        if "backend" in store_data:
            store_data["backend"] = BackendKind(store_data["backend"])

        return cls(
            store=StoreConfig(**store_data),
            redis=RedisConfig(**redis_data),
            query=QueryConfig(**query_data),
            ranking=RankingConfig(**ranking_data),
            seed_paths=list(data.get("seed_paths", []) or []),
            debug=bool(data.get("debug", False)),
        )

    @classmethod
    def from_env(cls, prefix: str = "CONTEXT_ENGINE") -> "EngineConfig":
        """Load configuration from environment variables.

        ``{prefix}_CONFIG`` names a YAML file used as the starting point;
        the variables below override individual settings.

        Environment variables:
            {prefix}_BACKEND: memory|redis
            {prefix}_MAX_SIZE: In-process capacity
            {prefix}_EVICTION: true|false
            {prefix}_BATCH_CHUNK_SIZE: Records per atomic chunk
            {prefix}_REDIS_URL: Redis URL (or REDIS_URL)
            {prefix}_REDIS_PREFIX: Key namespace
            {prefix}_TIMEOUT_SECONDS: Per-command timeout
            {prefix}_MAX_RETRIES: Retries for retryable operations
            {prefix}_DEFAULT_PAGE_SIZE / {prefix}_MAX_PAGE_SIZE: Pagination
            {prefix}_SEED_PATHS: Comma-separated seed files
            {prefix}_DEBUG: Enable debug mode
        """
        def get(key: str, default: str = None) -> Optional[str]:
            return os.environ.get(f"{prefix}_{key}", default)

        def get_bool(key: str, default: bool) -> bool:
            val = get(key)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def get_int(key: str, default: int) -> int:
            val = get(key)
            return int(val) if val else default

        def get_float(key: str, default: float) -> float:
            val = get(key)
            return float(val) if val else default

        config_path = get("CONFIG")
        base = cls.from_file(config_path) if config_path else cls()

        store = StoreConfig(
            backend=BackendKind(get("BACKEND", base.store.backend.value)),
            max_size=get_int("MAX_SIZE", base.store.max_size),
            eviction=get_bool("EVICTION", base.store.eviction),
            batch_chunk_size=get_int("BATCH_CHUNK_SIZE", base.store.batch_chunk_size),
        )

        redis = RedisConfig(
            url=get("REDIS_URL") or os.environ.get("REDIS_URL") or base.redis.url,
            key_prefix=get("REDIS_PREFIX", base.redis.key_prefix),
            timeout_seconds=get_float("TIMEOUT_SECONDS", base.redis.timeout_seconds),
            max_retries=get_int("MAX_RETRIES", base.redis.max_retries),
            backoff_base=base.redis.backoff_base,
            backoff_max=base.redis.backoff_max,
        )

        query = QueryConfig(
            default_page_size=get_int("DEFAULT_PAGE_SIZE", base.query.default_page_size),
            max_page_size=get_int("MAX_PAGE_SIZE", base.query.max_page_size),
        )

        seed_env = get("SEED_PATHS")
        seed_paths = (
            [p.strip() for p in seed_env.split(",") if p.strip()]
            if seed_env else base.seed_paths
        )

        return cls(
            store=store,
            redis=redis,
            query=query,
            ranking=base.ranking,
            seed_paths=seed_paths,
            debug=get_bool("DEBUG", base.debug),
        )

    @classmethod
    def for_testing(cls, max_size: int = 1000) -> "EngineConfig":
        """Create a configuration suitable for testing.

        Uses the in-process backend to avoid external dependencies.
        """
        return cls(
            store=StoreConfig(
                backend=BackendKind.MEMORY,
                max_size=max_size,
                batch_chunk_size=10,
            ),
            debug=True,
        )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Checks:
        - Store capacity and batch chunk bounds
        - Page size bounds
        - Redis connection target, timeout and retry bounds
        - Ranking weights
        """
        errors = []

        if self.store.max_size < 1:
            errors.append(f"store.max_size must be >= 1, got {self.store.max_size}")
        if not (1 <= self.store.batch_chunk_size <= MAX_BATCH_CHUNK_SIZE):
            errors.append(
                f"store.batch_chunk_size must be between 1 and {MAX_BATCH_CHUNK_SIZE}, "
                f"got {self.store.batch_chunk_size}"
            )

        if self.query.max_page_size < 1:
            errors.append(f"query.max_page_size must be >= 1, got {self.query.max_page_size}")
        if not (1 <= self.query.default_page_size <= self.query.max_page_size):
            errors.append(
                f"query.default_page_size must be between 1 and max_page_size "
                f"({self.query.max_page_size}), got {self.query.default_page_size}"
            )

        if self.store.backend == BackendKind.REDIS:
            if not self.redis.url or not self.redis.url.strip():
                errors.append("Redis backend requires redis.url")
            if not self.redis.key_prefix:
                errors.append("redis.key_prefix cannot be empty")
        if self.redis.timeout_seconds <= 0:
            errors.append(f"redis.timeout_seconds must be positive, got {self.redis.timeout_seconds}")
        if self.redis.max_retries < 0:
            errors.append(f"redis.max_retries must be >= 0, got {self.redis.max_retries}")
        if self.redis.backoff_base < 0 or self.redis.backoff_max < 0:
            errors.append("redis backoff settings must be non-negative")

        weights = self.ranking.weights()
        for name, value in weights.items():
            if value < 0:
                errors.append(f"ranking.{name} must be non-negative, got {value}")
        if sum(weights.values()) <= 0:
            errors.append("At least one ranking weight must be > 0")

        return errors
