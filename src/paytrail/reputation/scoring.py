"""
Reputation Scoring: composite trust score from payment history.

Algorithm (all components 0-100):
1. reliability = successful / total * 100
2. speed = max(0, 100 - avg_latency_ms / 100)
3. volume = min(100, total_volume / 1000 * 100)
4. repeat = min(100, (total - unique_payers) / total * 100)
5. recency_weight = max(0.5, 1 - days_since_oldest_payment / 365)
6. composite = (0.4 reliability + 0.2 speed + 0.2 volume + 0.2 repeat) * recency_weight

Only settled payments (success or failed) count. A service with no
settled payments scores 0 with recency_weight 1.0.

Batch and incremental modes share this module: both reduce the history to
a ``PaymentStats`` and score it with ``score_stats``, so they agree
whenever their statistics agree.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from paytrail.core.types import (
    FeedbackRecord,
    PaymentRecord,
    PaymentStatus,
    ReputationSnapshot,
    _parse_dt,
    to_decimal,
    utcnow,
)

# Component weights
RELIABILITY_WEIGHT = 0.4
SPEED_WEIGHT = 0.2
VOLUME_WEIGHT = 0.2
REPEAT_WEIGHT = 0.2

# Recency never discounts history below half
RECENCY_FLOOR = 0.5
RECENCY_HORIZON_DAYS = 365

# Volume at which the volume component saturates
VOLUME_SATURATION = Decimal("1000")


# ─── Component functions ─────────────────────────────────────────────


def reliability_score(successful: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return successful / total * 100


def speed_score(avg_latency_ms: float) -> float:
    return max(0.0, 100 - avg_latency_ms / 100)


def volume_score(total_volume: Decimal) -> float:
    return float(min(Decimal("100"), total_volume / VOLUME_SATURATION * 100))


def repeat_score(repeat_customers: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return min(100.0, repeat_customers / total * 100)


def recency_weight(oldest: datetime | None, now: datetime) -> float:
    """Linear decay over a year from the oldest payment, floored at 0.5."""
    if oldest is None:
        return 1.0
    days = max(0.0, (now - oldest).total_seconds() / 86400)
    return max(RECENCY_FLOOR, min(1.0, 1 - days / RECENCY_HORIZON_DAYS))


def composite_score(
    reliability: float,
    speed: float,
    volume: float,
    repeat: float,
    recency: float,
) -> float:
    raw = (
        reliability * RELIABILITY_WEIGHT
        + speed * SPEED_WEIGHT
        + volume * VOLUME_WEIGHT
        + repeat * REPEAT_WEIGHT
    )
    return raw * recency


# ─── Sufficient statistics ───────────────────────────────────────────


@dataclass
class PaymentStats:
    """
    Running totals that fully determine a reputation snapshot.

    Latency is kept as an integer sum plus sample count rather than a
    rolling float mean, so folding payments one at a time yields exactly the
    same average as a batch pass over the same rows.
    """

    total: int = 0
    successful: int = 0
    failed: int = 0
    latency_sum: int = 0
    latency_samples: int = 0
    volume: Decimal = Decimal("0")
    payer_counts: dict[str, int] = field(default_factory=dict)
    oldest: datetime | None = None

    @property
    def unique_payers(self) -> int:
        return len(self.payer_counts)

    @property
    def repeat_customers(self) -> int:
        return self.total - self.unique_payers

    @property
    def avg_latency_ms(self) -> float:
        if self.latency_samples == 0:
            return 0.0
        return self.latency_sum / self.latency_samples

    def add(self, payment: PaymentRecord) -> bool:
        """Fold one payment in. Returns False (and ignores it) if not settled."""
        if not payment.status.is_settled:
            return False

        self.total += 1
        if payment.status == PaymentStatus.SUCCESS:
            self.successful += 1
        else:
            self.failed += 1

        if payment.latency_ms:
            self.latency_sum += int(payment.latency_ms)
            self.latency_samples += 1

        self.volume += payment.amount
        payer = payment.from_address.lower()
        self.payer_counts[payer] = self.payer_counts.get(payer, 0) + 1

        if self.oldest is None or payment.timestamp < self.oldest:
            self.oldest = payment.timestamp
        return True

    @classmethod
    def from_payments(cls, payments: Iterable[PaymentRecord]) -> PaymentStats:
        stats = cls()
        for payment in payments:
            stats.add(payment)
        return stats

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "latency_sum": self.latency_sum,
            "latency_samples": self.latency_samples,
            "volume": str(self.volume),
            "payer_counts": dict(self.payer_counts),
            "oldest": self.oldest.isoformat() if self.oldest else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentStats:
        return cls(
            total=int(data.get("total", 0)),
            successful=int(data.get("successful", 0)),
            failed=int(data.get("failed", 0)),
            latency_sum=int(data.get("latency_sum", 0)),
            latency_samples=int(data.get("latency_samples", 0)),
            volume=to_decimal(data.get("volume", "0")),
            payer_counts={k: int(v) for k, v in (data.get("payer_counts") or {}).items()},
            oldest=_parse_dt(data.get("oldest")),
        )


# ─── Scoring ─────────────────────────────────────────────────────────


def score_stats(
    service_id: str,
    stats: PaymentStats,
    now: datetime | None = None,
    feedback: Iterable[FeedbackRecord] | None = None,
) -> ReputationSnapshot:
    """Turn sufficient statistics into a snapshot."""
    if now is None:
        now = utcnow()

    feedback_scores = [f.score for f in feedback or ()]
    feedback_count = len(feedback_scores)
    avg_feedback = round(sum(feedback_scores) / feedback_count, 2) if feedback_count else None

    if stats.total == 0:
        return ReputationSnapshot(
            service_id=service_id,
            reputation_score=0.0,
            recency_weight=1.0,
            feedback_count=feedback_count,
            avg_feedback_score=avg_feedback,
            last_calculated=now,
        )

    reliability = reliability_score(stats.successful, stats.total)
    speed = speed_score(stats.avg_latency_ms)
    volume = volume_score(stats.volume)
    repeat = repeat_score(stats.repeat_customers, stats.total)
    recency = recency_weight(stats.oldest, now)

    return ReputationSnapshot(
        service_id=service_id,
        total_payments=stats.total,
        successful_payments=stats.successful,
        failed_payments=stats.failed,
        avg_latency_ms=round(stats.avg_latency_ms, 2),
        unique_payers=stats.unique_payers,
        repeat_customers=stats.repeat_customers,
        total_volume=stats.volume,
        reputation_score=round(composite_score(reliability, speed, volume, repeat, recency), 2),
        success_rate=round(reliability, 2),
        recency_weight=round(recency, 2),
        reliability_score=round(reliability, 2),
        speed_score=round(speed, 2),
        volume_score=round(volume, 2),
        repeat_score=round(repeat, 2),
        feedback_count=feedback_count,
        avg_feedback_score=avg_feedback,
        last_calculated=now,
    )


def compute_reputation(
    service_id: str,
    payments: Iterable[PaymentRecord],
    now: datetime | None = None,
    feedback: Iterable[FeedbackRecord] | None = None,
) -> ReputationSnapshot:
    """
    Deterministic batch score from a service's full payment history.

    Pure: the same payments, feedback and ``now`` always produce an identical
    snapshot. Pending payments are ignored.
    """
    return score_stats(service_id, PaymentStats.from_payments(payments), now, feedback)
