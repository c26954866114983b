"""
Storage backends for PayTrail.

Provides pluggable persistence for the ledger store, cursors, sessions and
caches.

Configuration via environment:
    PAYTRAIL_STORAGE_BACKEND=memory  # or 'redis'
    PAYTRAIL_REDIS_URL=redis://localhost:6379/0

Example:
    >>> from paytrail.storage import get_storage, InMemoryStorage, RedisStorage
    >>>
    >>> storage = get_storage()
    >>> storage = InMemoryStorage()
    >>> storage = RedisStorage(redis_url="redis://localhost:6379")
"""

from __future__ import annotations

import os

from paytrail.storage.base import (
    StorageBackend,
    get_storage_backend,
    list_storage_backends,
    register_storage_backend,
)
from paytrail.storage.memory import InMemoryStorage
from paytrail.storage.redis import RedisStorage


def get_storage(backend_name: str | None = None) -> StorageBackend:
    """
    Get storage backend from environment or by name.

    Args:
        backend_name: Backend name, or None to read from PAYTRAIL_STORAGE_BACKEND env

    Returns:
        StorageBackend instance

    Raises:
        ValueError: If backend name is unknown
    """
    if backend_name is None:
        backend_name = os.environ.get("PAYTRAIL_STORAGE_BACKEND", "memory")

    backend_class = get_storage_backend(backend_name)

    if backend_class is None:
        available = list_storage_backends()
        raise ValueError(
            f"Unknown storage backend: '{backend_name}'. Available: {', '.join(available)}"
        )

    return backend_class()


__all__ = [
    "StorageBackend",
    "InMemoryStorage",
    "RedisStorage",
    "get_storage",
    "get_storage_backend",
    "list_storage_backends",
    "register_storage_backend",
]
