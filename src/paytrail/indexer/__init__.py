"""
Event indexers.

Block range indexers (payments, feedback) advance a per-indexer cursor;
the confirmation indexer polls receipts for tracked transactions.
"""

from paytrail.indexer.base import BaseIndexer, IndexerRunResult
from paytrail.indexer.feedback import FeedbackIndexer
from paytrail.indexer.payment import PaymentIndexer
from paytrail.indexer.transaction import (
    ConfirmationRunResult,
    TransactionIndexer,
    track_transaction,
)

__all__ = [
    "BaseIndexer",
    "IndexerRunResult",
    "PaymentIndexer",
    "FeedbackIndexer",
    "TransactionIndexer",
    "ConfirmationRunResult",
    "track_transaction",
]
