"""Error taxonomy for the Context Engine.

Validation and not-found errors are caller-facing and final. Backend
errors are retried by the store before they surface. Index inconsistencies
are repaired and logged, never raised from a read.
"""

from typing import Optional


class ContextEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(ContextEngineError, ValueError):
    """Malformed filter, patch or record (bad limit, empty tag, unknown kind)."""


class NotFoundError(ContextEngineError, KeyError):
    """An operation referenced a context id that does not exist."""

    def __init__(self, context_id: str):
        self.context_id = context_id
        super().__init__(context_id)

    def __str__(self) -> str:
        return f"Context {self.context_id} not found"


class CapacityExceededError(ContextEngineError):
    """The bounded store is full and eviction is disabled."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"Storage limit reached (max: {max_size} contexts)")


class BackendUnavailableError(ContextEngineError):
    """The external store could not be reached (timeout, refused connection)."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class IndexInconsistencyError(ContextEngineError):
    """An index entry references a record missing from the primary store."""

    def __init__(self, context_id: str, index_keys: Optional[list[str]] = None):
        self.context_id = context_id
        self.index_keys = index_keys or []
        super().__init__(
            f"Index references missing context {context_id} "
            f"({', '.join(self.index_keys) or 'unknown index'})"
        )


class BatchIngestError(ContextEngineError):
    """A chunk of a batch ingest failed. Earlier chunks remain committed."""

    def __init__(self, committed_ids: list[str], failed_chunk: int, cause: Exception):
        self.committed_ids = committed_ids
        self.failed_chunk = failed_chunk
        self.cause = cause
        super().__init__(
            f"Batch chunk {failed_chunk} failed after {len(committed_ids)} "
            f"contexts were committed: {cause}"
        )


class ConfigurationError(ContextEngineError, ValueError):
    """The engine configuration is invalid."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid configuration: {errors}")
