"""
In-Memory Storage Backend.

Default storage backend that keeps all data in memory.
Suitable for development and testing, but not for production.
"""

from __future__ import annotations

import time
import uuid
from copy import deepcopy
from decimal import Decimal
from typing import Any

from paytrail.storage.base import StorageBackend, matches_filters, register_storage_backend


class InMemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    Stores all data in Python dicts. Data is lost when process ends.

    Conditional writes contain no await points, so within one event loop
    each of them runs to completion before any other coroutine observes the
    record.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, tuple[str, float]] = {}

    def _ensure_collection(self, collection: str) -> dict[str, Any]:
        """Ensure collection exists and return it."""
        if collection not in self._data:
            self._data[collection] = {}
        return self._data[collection]

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        coll = self._ensure_collection(collection)
        coll[key] = deepcopy(data)

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        coll = self._ensure_collection(collection)
        data = coll.get(key)
        if data is None:
            return None
        return deepcopy(data)

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        coll = self._ensure_collection(collection)
        if key in coll:
            del coll[key]
            return True
        return False

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        coll = self._ensure_collection(collection)

        results = []
        for key in sorted(coll):
            data = coll[key]
            if not matches_filters(data, filters):
                continue

            result = deepcopy(data)
            result["_key"] = key
            results.append(result)

        results = results[offset:]
        if limit is not None:
            results = results[:limit]

        return results

    async def update(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> bool:
        coll = self._ensure_collection(collection)
        if key not in coll:
            return False

        coll[key].update(deepcopy(data))
        return True

    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        if filters:
            results = await self.query(collection, filters)
            return len(results)

        coll = self._ensure_collection(collection)
        return len(coll)

    async def conditional_add(
        self,
        collection: str,
        key: str,
        field: str,
        amount: str,
        *,
        ceiling_fields: tuple[str, ...] = (),
        conditions: dict[str, Any] | None = None,
        counters: dict[str, int] | None = None,
        companion: tuple[str, str, dict[str, Any]] | None = None,
    ) -> dict[str, Any] | None:
        coll = self._ensure_collection(collection)
        record = coll.get(key)
        if record is None:
            return None
        if not matches_filters(record, conditions):
            return None
        if companion is not None and companion[1] in self._ensure_collection(companion[0]):
            return None

        new_value = Decimal(str(record.get(field, "0"))) + Decimal(amount)
        for ceiling_field in ceiling_fields:
            if new_value > Decimal(str(record.get(ceiling_field, "0"))):
                return None

        record[field] = str(new_value)
        for counter, step in (counters or {}).items():
            record[counter] = int(record.get(counter, 0)) + step

        if companion is not None:
            companion_collection, companion_key, companion_data = companion
            self._ensure_collection(companion_collection)[companion_key] = deepcopy(companion_data)

        return deepcopy(record)

    async def compare_and_update(
        self,
        collection: str,
        key: str,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> dict[str, Any] | None:
        coll = self._ensure_collection(collection)
        record = coll.get(key)
        if record is None:
            return None
        if not matches_filters(record, expected):
            return None

        record.update(deepcopy(updates))
        return deepcopy(record)

    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        now = time.time()

        held = self._locks.get(key)
        if held is not None and now < held[1]:
            return None

        token = str(uuid.uuid4())
        self._locks[key] = (token, now + ttl)
        return token

    async def release_lock(
        self,
        key: str,
        token: str | None = None,
    ) -> bool:
        held = self._locks.get(key)
        if held is None:
            return False
        if token is not None and held[0] != token:
            return False
        del self._locks[key]
        return True

    async def health_check(self) -> bool:
        """Always healthy for in-memory."""
        return True


# Register as default backend
register_storage_backend("memory", InMemoryStorage)
