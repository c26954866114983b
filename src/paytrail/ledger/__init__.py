"""Ledger store and named locks over the storage backend."""

from paytrail.ledger.lock import LockService
from paytrail.ledger.store import LedgerStore

__all__ = ["LedgerStore", "LockService"]
