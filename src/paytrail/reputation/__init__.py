"""
Reputation: deterministic scoring, advisory cache, and the engine that
keeps snapshots current in batch or incremental mode.
"""

from paytrail.reputation.cache import ReputationCache
from paytrail.reputation.engine import RecomputeResult, ReputationEngine, ReputationMode
from paytrail.reputation.scoring import PaymentStats, compute_reputation, score_stats

__all__ = [
    "ReputationEngine",
    "ReputationMode",
    "RecomputeResult",
    "ReputationCache",
    "PaymentStats",
    "compute_reputation",
    "score_stats",
]
