"""Dependency Injection Container.

Selects the storage backend once at startup and manages its lifecycle.
"""

from .container import Container, create_store

__all__ = ["Container", "create_store"]
