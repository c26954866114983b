"""
Named Lock Service.

Provides mutual exclusion across processes sharing one storage backend.
Indexer runs use it so two workers never advance the same cursor, and the
incremental reputation path uses it to serialize read-modify-write of the
running statistics.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from paytrail.core.logging import get_logger

if TYPE_CHECKING:
    from paytrail.storage.base import StorageBackend

logger = get_logger("ledger.lock")


class LockService:
    """
    Service for managing named locks (mutexes).

    Implements a distributed lock pattern using the storage backend.
    Locks carry a TTL so a crashed holder cannot wedge the resource.
    """

    def __init__(self, storage: StorageBackend) -> None:
        """
        Initialize lock service.

        Args:
            storage: Storage backend (Redis/Memory)
        """
        self._storage = storage

    @staticmethod
    def _lock_key(resource: str) -> str:
        return f"lock:{resource}"

    async def acquire(
        self,
        resource: str,
        ttl: int = 30,
        retry_count: int = 0,
        retry_delay: float = 0.5,
    ) -> str | None:
        """
        Acquire a lock on a resource.

        Args:
            resource: Resource name (e.g. ``indexer:payment``)
            ttl: Lock time-to-live in seconds
            retry_count: Number of retries if lock is held
            retry_delay: Delay between retries

        Returns:
            lock_token (str) if successful, None if failed
        """
        lock_key = self._lock_key(resource)

        for i in range(retry_count + 1):
            token = await self._storage.acquire_lock(lock_key, ttl)
            if token:
                logger.debug(f"Acquired lock for {resource} (token: {token[:8]}...)")
                return token

            if i < retry_count:
                logger.debug(f"{resource} locked, retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)

        if retry_count:
            logger.warning(f"Failed to acquire lock for {resource} after {retry_count} retries")
        return None

    async def release(self, resource: str, lock_token: str) -> bool:
        """
        Release a previously acquired lock.

        Args:
            resource: The resource the lock was acquired for
            lock_token: The ownership token returned by acquire()

        Returns:
            True if released, False if not found or token mismatch
        """
        result = await self._storage.release_lock(self._lock_key(resource), lock_token)
        if result:
            logger.debug(f"Released lock for {resource}")
        return result
