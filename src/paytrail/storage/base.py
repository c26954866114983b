"""
Abstract Storage Backend for PayTrail.

Provides the pluggable persistence layer behind the ledger store: plain
document CRUD plus the two conditional writes the escrow path depends on.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StorageBackend(ABC):
    """
    Abstract base class for storage backends.

    Provides simple CRUD operations for storing/retrieving data, and
    atomic conditional updates for budget accounting.
    """

    @abstractmethod
    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        """
        Save data to storage (insert or overwrite).

        Args:
            collection: Collection/table name
            key: Unique key for the record
            data: Data to store (must be JSON-serializable)
        """
        ...

    @abstractmethod
    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        """
        Get data from storage.

        Returns:
            Data dict or None if not found
        """
        ...

    @abstractmethod
    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        """
        Delete data from storage.

        Returns:
            True if deleted, False if not found
        """
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """
        Query data with optional filters.

        Args:
            collection: Collection/table name
            filters: Key-value pairs to filter by (exact match). A list or
                tuple value matches any of its members.
            limit: Maximum records to return
            offset: Number of records to skip

        Returns:
            List of matching records, ordered by key
        """
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> bool:
        """
        Update existing data.

        Returns:
            True if updated, False if not found
        """
        ...

    @abstractmethod
    async def count(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
    ) -> int:
        """Count records in collection."""
        ...

    @abstractmethod
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
        """
        Atomically add ``amount`` to a decimal field if the result stays in bounds.

        Expresses ``field = field + amount WHERE field + amount <= min(ceiling_fields)
        AND conditions`` as one indivisible step. No other writer can observe
        or modify the record between the check and the write.

        Args:
            collection: Collection/table name
            key: Record key
            field: Decimal field to increment (stored as string)
            amount: Amount to add (decimal string)
            ceiling_fields: Fields of the same record whose minimum bounds the result
            conditions: Field values that must match exactly for the update to apply
            counters: Integer fields to increment in the same step
            companion: (collection, key, data) inserted in the same step.
                The companion key must not exist yet; if it does, nothing
                is written.

        Returns:
            The updated record, or None if the record is missing, any
            condition or ceiling fails, or the companion key is taken.
        """
        ...

    @abstractmethod
    async def compare_and_update(
        self,
        collection: str,
        key: str,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Apply ``updates`` only if every field in ``expected`` currently matches.

        Returns:
            The updated record, or None if the record is missing or did not match.
        """
        ...

    @abstractmethod
    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        """
        Acquire a named lock.

        Returns:
            Ownership token if acquired, None if already held
        """
        ...

    @abstractmethod
    async def release_lock(
        self,
        key: str,
        token: str | None = None,
    ) -> bool:
        """Release a lock; with a token, only if the token still owns it."""
        ...

    async def health_check(self) -> bool:
        """
        Check if storage is healthy and connected.

        Returns:
            True if healthy
        """
        return True


def matches_filters(data: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """Exact-match filter shared by backends; list/tuple values mean 'any of'."""
    if not filters:
        return True
    for filter_key, filter_value in filters.items():
        value = data.get(filter_key)
        if isinstance(filter_value, (list, tuple, set, frozenset)):
            if value not in filter_value:
                return False
        elif value != filter_value:
            return False
    return True


# Storage backend registry for dependency injection
_STORAGE_BACKENDS: dict[str, type[StorageBackend]] = {}


def register_storage_backend(name: str, backend_class: type[StorageBackend]) -> None:
    """Register a storage backend by name."""
    _STORAGE_BACKENDS[name] = backend_class


def get_storage_backend(name: str) -> type[StorageBackend] | None:
    """Get a registered storage backend by name."""
    return _STORAGE_BACKENDS.get(name)


def list_storage_backends() -> list[str]:
    """List all registered storage backend names."""
    return list(_STORAGE_BACKENDS.keys())
