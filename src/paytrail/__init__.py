"""
PayTrail - payment tracking, reputation and escrow for pay-per-use agents.

Indexes on-chain payments and feedback into a durable ledger, scores
services from their payment history, and lets owners pre-fund escrow
sessions that agents debit per call.

Usage:
    >>> from paytrail import Config, ChainReader, LedgerStore, PaymentIndexer
    >>> from paytrail.storage import get_storage
    >>>
    >>> config = Config.from_env()
    >>> store = LedgerStore(get_storage(config.storage_backend))
    >>> async with ChainReader.from_config(config) as reader:
    ...     result = await PaymentIndexer(reader, store, config).run()
"""

from paytrail.chain.reader import ChainReader
from paytrail.core.config import Config
from paytrail.core.exceptions import (
    BudgetExceededError,
    ChainUnavailableError,
    ConfigurationError,
    MalformedEventError,
    PayTrailError,
    QuoteExceedsBudgetError,
    ServiceNotFoundError,
    SessionError,
    SessionExpiredError,
    SessionInactiveError,
    SessionNotFoundError,
    SessionStateError,
    StorageUnavailableError,
    UnauthorizedAgentError,
    ValidationError,
)
from paytrail.core.logging import configure_logging, get_logger
from paytrail.core.types import (
    BudgetCheck,
    EscrowSession,
    FeedbackRecord,
    IndexerCursor,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    ReputationSnapshot,
    ServiceListing,
    SessionPayment,
    SessionStats,
    SessionStatus,
    TaskRecord,
    TaskState,
    TrackedTransaction,
    TransactionKind,
    TransactionStatus,
)
from paytrail.discovery import Candidate, DiscoveryService, HireResult
from paytrail.escrow import RefundResult, SessionCreation, SessionManager
from paytrail.indexer import (
    FeedbackIndexer,
    IndexerRunResult,
    PaymentIndexer,
    TransactionIndexer,
    track_transaction,
)
from paytrail.ledger import LedgerStore, LockService
from paytrail.payments import SettlementRecorder
from paytrail.reputation import ReputationCache, ReputationEngine, ReputationMode, compute_reputation
from paytrail.scheduler import IndexerScheduler

__version__ = "0.1.0"

__all__ = [
    # Core
    "Config",
    "configure_logging",
    "get_logger",
    # Chain
    "ChainReader",
    # Ledger
    "LedgerStore",
    "LockService",
    # Indexers
    "PaymentIndexer",
    "FeedbackIndexer",
    "TransactionIndexer",
    "IndexerRunResult",
    "track_transaction",
    "IndexerScheduler",
    # Reputation
    "ReputationEngine",
    "ReputationMode",
    "ReputationCache",
    "compute_reputation",
    # Escrow
    "SessionManager",
    "SessionCreation",
    "RefundResult",
    # Discovery
    "DiscoveryService",
    "Candidate",
    "HireResult",
    # Payments
    "SettlementRecorder",
    # Types
    "PaymentRecord",
    "PaymentStatus",
    "FeedbackRecord",
    "ReputationSnapshot",
    "EscrowSession",
    "SessionPayment",
    "SessionStats",
    "SessionStatus",
    "BudgetCheck",
    "IndexerCursor",
    "TrackedTransaction",
    "TransactionKind",
    "TransactionStatus",
    "ServiceListing",
    "TaskRecord",
    "TaskState",
    "PaymentMethod",
    # Exceptions
    "PayTrailError",
    "ConfigurationError",
    "ValidationError",
    "ChainUnavailableError",
    "StorageUnavailableError",
    "MalformedEventError",
    "SessionError",
    "SessionNotFoundError",
    "SessionStateError",
    "SessionInactiveError",
    "SessionExpiredError",
    "UnauthorizedAgentError",
    "BudgetExceededError",
    "ServiceNotFoundError",
    "QuoteExceedsBudgetError",
]
