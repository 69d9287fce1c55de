"""Context Engine.

Stores context records (knowledge snippets such as code examples, best
practices and security tips) and serves them back through filtered,
ranked queries and similarity search. Key design principles:

1. **Interchangeable backends**: a bounded in-process store and a Redis
   store implement the same contract and return identical results.

2. **Incremental indexes**: kind, tag and domain category indexes are
   updated together with the primary record on every mutation.

3. **Configuration-driven**: the backend, capacity, page sizes and ranking
   weights come from configuration, not hardcoded values.

Usage:
    from contextengine import EngineConfig, RetrievalService

    config = EngineConfig.from_env()
    async with RetrievalService(config) as service:
        await service.create("best_practice", "Validate input", "...")
        page = await service.query(text="input validation")
"""

from .config import EngineConfig
from .errors import (
    BackendUnavailableError,
    BatchIngestError,
    CapacityExceededError,
    ConfigurationError,
    ContextEngineError,
    IndexInconsistencyError,
    NotFoundError,
    ValidationError,
)
from .interfaces import (
    ContextFilter,
    ContextKind,
    ContextPatch,
    ContextRecord,
    QueryResult,
    ScoredContext,
)
from .services import RetrievalService

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "RetrievalService",
    # Model
    "ContextFilter",
    "ContextKind",
    "ContextPatch",
    "ContextRecord",
    "QueryResult",
    "ScoredContext",
    # Errors
    "BackendUnavailableError",
    "BatchIngestError",
    "CapacityExceededError",
    "ConfigurationError",
    "ContextEngineError",
    "IndexInconsistencyError",
    "NotFoundError",
    "ValidationError",
]
