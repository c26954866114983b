"""
Reputation Cache: TTL-based read-through cache for snapshots.

Entries are advisory: they speed up discovery and query paths but are never
consulted for budget decisions, and any write to a service's snapshot
invalidates its entry.

Key pattern: reputation:{service_id}
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from paytrail.core.logging import get_logger
from paytrail.core.types import ReputationSnapshot
from paytrail.storage.base import StorageBackend

logger = get_logger("reputation.cache")

REPUTATION_TTL = 120  # 2 minutes

COLLECTION = "reputation_cache"


class ReputationCache:
    """TTL cache of ReputationSnapshot backed by StorageBackend."""

    def __init__(self, storage: StorageBackend, ttl: int = REPUTATION_TTL) -> None:
        self._storage = storage
        self._ttl = ttl

    @staticmethod
    def _key(service_id: str) -> str:
        return f"reputation:{service_id}"

    async def get(self, service_id: str) -> ReputationSnapshot | None:
        """Cached snapshot, or None on miss or expiry."""
        key = self._key(service_id)
        entry = await self._storage.get(COLLECTION, key)

        if entry is None:
            return None

        if time.time() > entry.get("_expires_at", 0):
            await self._storage.delete(COLLECTION, key)
            return None

        return ReputationSnapshot.from_dict(entry["data"])

    async def set(
        self,
        snapshot: ReputationSnapshot,
        ttl: int | None = None,
    ) -> None:
        await self._storage.save(COLLECTION, self._key(snapshot.service_id), {
            "data": snapshot.to_dict(),
            "_expires_at": time.time() + (ttl if ttl is not None else self._ttl),
        })

    async def invalidate(self, service_id: str) -> None:
        await self._storage.delete(COLLECTION, self._key(service_id))

    async def get_or_fetch(
        self,
        service_id: str,
        fetch_fn: Callable[[], Awaitable[ReputationSnapshot | None]],
    ) -> tuple[ReputationSnapshot | None, bool]:
        """
        Get from cache or fetch and store.

        Returns:
            Tuple of (snapshot, cache_hit)
        """
        cached = await self.get(service_id)
        if cached is not None:
            return cached, True

        snapshot = await fetch_fn()
        if snapshot is not None:
            await self.set(snapshot)

        return snapshot, False


__all__ = ["ReputationCache", "REPUTATION_TTL"]
