"""
Redis Storage Backend.

Production storage backend using Redis. Records are JSON documents under
``{prefix}:{collection}:{key}`` with a per-collection index set.
"""

from __future__ import annotations

import json
import os
import uuid
from decimal import Decimal
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from paytrail.core.exceptions import StorageUnavailableError
from paytrail.core.logging import get_logger
from paytrail.storage.base import StorageBackend, matches_filters, register_storage_backend

logger = get_logger("storage.redis")

# Optimistic transactions retry on contention up to this many times
MAX_WATCH_RETRIES = 64


class RedisStorage(StorageBackend):
    """
    Redis storage backend.

    Conditional writes run as WATCH/MULTI optimistic transactions: the
    record is read under WATCH, checked in Python with Decimal arithmetic,
    and written in MULTI. A concurrent writer aborts the EXEC and the
    attempt is replayed against the fresh value.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        prefix: str = "paytrail",
        client: redis.Redis | None = None,
    ) -> None:
        """
        Initialize Redis storage.

        Args:
            redis_url: Redis connection URL (or from PAYTRAIL_REDIS_URL env)
            prefix: Key prefix for all storage keys
            client: Pre-built client to use instead of connecting to redis_url
        """
        self._redis_url = redis_url or os.environ.get(
            "PAYTRAIL_REDIS_URL",
            "redis://localhost:6379/0",
        )
        self._prefix = prefix
        self._client: redis.Redis | None = client

    def _get_client(self) -> redis.Redis:
        """Lazy-load Redis client."""
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _make_key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:{collection}:{key}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:_index"

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        client = self._get_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._make_key(collection, key), json.dumps(data))
            pipe.sadd(self._index_key(collection), key)
            await pipe.execute()

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        client = self._get_client()
        data = await client.get(self._make_key(collection, key))

        if data is None:
            return None

        return json.loads(data)

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        client = self._get_client()
        result = await client.delete(self._make_key(collection, key))
        await client.srem(self._index_key(collection), key)
        return result > 0

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
        client = self._get_client()
        redis_key = self._make_key(collection, key)
        watched = [redis_key]
        if companion is not None:
            watched.append(self._make_key(companion[0], companion[1]))

        for _ in range(MAX_WATCH_RETRIES):
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(*watched)
                    raw = await pipe.get(redis_key)
                    if raw is None:
                        return None
                    record = json.loads(raw)
                    if not matches_filters(record, conditions):
                        return None
                    if companion is not None and await pipe.exists(watched[1]):
                        return None

                    new_value = Decimal(str(record.get(field, "0"))) + Decimal(amount)
                    if any(
                        new_value > Decimal(str(record.get(c, "0"))) for c in ceiling_fields
                    ):
                        return None

                    record[field] = str(new_value)
                    for counter, step in (counters or {}).items():
                        record[counter] = int(record.get(counter, 0)) + step

                    pipe.multi()
                    pipe.set(redis_key, json.dumps(record))
                    if companion is not None:
                        c_collection, c_key, c_data = companion
                        pipe.set(self._make_key(c_collection, c_key), json.dumps(c_data))
                        pipe.sadd(self._index_key(c_collection), c_key)
                    await pipe.execute()
                    return record
                except WatchError:
                    logger.debug(f"Contention on {redis_key}, replaying conditional add")
                    continue

        raise StorageUnavailableError(
            f"Conditional update on {collection}/{key} did not settle after "
            f"{MAX_WATCH_RETRIES} attempts"
        )

    async def compare_and_update(
        self,
        collection: str,
        key: str,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> dict[str, Any] | None:
        client = self._get_client()
        redis_key = self._make_key(collection, key)

        for _ in range(MAX_WATCH_RETRIES):
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(redis_key)
                    raw = await pipe.get(redis_key)
                    if raw is None:
                        return None
                    record = json.loads(raw)
                    if not matches_filters(record, expected):
                        return None

                    record.update(updates)
                    pipe.multi()
                    pipe.set(redis_key, json.dumps(record))
                    await pipe.execute()
                    return record
                except WatchError:
                    continue

        raise StorageUnavailableError(
            f"Compare-and-update on {collection}/{key} did not settle after "
            f"{MAX_WATCH_RETRIES} attempts"
        )

    # Lua script for safe lock release: only delete if token matches
    _RELEASE_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        """Acquire a distributed lock with ownership token (SET NX EX)."""
        client = self._get_client()
        redis_key = f"{self._prefix}:locks:{key}"
        token = str(uuid.uuid4())

        result = await client.set(redis_key, token, nx=True, ex=ttl)
        if result:
            return token
        return None

    async def release_lock(
        self,
        key: str,
        token: str | None = None,
    ) -> bool:
        """
        Release a lock safely using Lua script.

        Only deletes the key if the stored value matches our token.
        """
        client = self._get_client()
        redis_key = f"{self._prefix}:locks:{key}"

        if token:
            result = await client.eval(self._RELEASE_LOCK_SCRIPT, 1, redis_key, token)
            return int(result) > 0

        result = await client.delete(redis_key)
        return result > 0

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        client = self._get_client()
        keys = await client.smembers(self._index_key(collection))

        results = []
        for key in sorted(keys):
            data = await self.get(collection, key)
            if data is None:
                continue
            if not matches_filters(data, filters):
                continue

            data["_key"] = key
            results.append(data)

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
        existing = await self.get(collection, key)
        if existing is None:
            return False

        existing.update(data)
        await self.save(collection, key, existing)
        return True

    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        if filters:
            results = await self.query(collection, filters)
            return len(results)

        client = self._get_client()
        return await client.scard(self._index_key(collection))

    async def health_check(self) -> bool:
        """Check Redis connection."""
        try:
            client = self._get_client()
            await client.ping()
            return True
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


# Register backend
register_storage_backend("redis", RedisStorage)
