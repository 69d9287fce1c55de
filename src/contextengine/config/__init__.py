"""Configuration system for the Context Engine.

Provides strongly-typed configuration objects that can be loaded from:
- Environment variables
- YAML files
- Programmatic construction

All configuration is validated before the engine starts.
"""

from .system import EngineConfig
from .providers import BackendKind, StoreConfig, RedisConfig, QueryConfig, RankingConfig

__all__ = [
    "EngineConfig",
    "BackendKind",
    "StoreConfig",
    "RedisConfig",
    "QueryConfig",
    "RankingConfig",
]
