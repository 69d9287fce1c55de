"""Storage providers.

Both backends implement ``IContextStore`` and are selected once at
startup by the container.
"""

from .base import ContextStoreProvider, Provider, ProviderHealth, ProviderStatus
from .memory import BoundedMemoryStore
from .redis import RedisContextStore

__all__ = [
    "Provider",
    "ProviderHealth",
    "ProviderStatus",
    "ContextStoreProvider",
    "BoundedMemoryStore",
    "RedisContextStore",
]
