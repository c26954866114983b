"""
Reputation Engine: batch and incremental snapshot maintenance.

Batch mode recomputes a service's snapshot from its full payment history
on a schedule. Incremental mode folds each settlement into stored running
statistics and rescores immediately. Both score through
``paytrail.reputation.scoring``, so they agree at steady state;
``reconcile`` rebuilds the incremental statistics from the ledger whenever
they are suspected to have drifted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from paytrail.core.exceptions import StorageUnavailableError
from paytrail.core.logging import get_logger
from paytrail.core.types import (
    FeedbackRecord,
    PaymentRecord,
    PaymentStatus,
    ReputationSnapshot,
    ServiceListing,
    utcnow,
)
from paytrail.ledger.lock import LockService
from paytrail.ledger.store import LedgerStore
from paytrail.reputation.cache import ReputationCache
from paytrail.reputation.scoring import PaymentStats, compute_reputation, score_stats

logger = get_logger("reputation.engine")

STATS_LOCK_TTL = 10


class ReputationMode(str, Enum):
    BATCH = "batch"
    INCREMENTAL = "incremental"


@dataclass
class RecomputeResult:
    """Outcome of a recompute_all pass."""

    updated: int = 0
    failed: int = 0
    failed_services: list[str] = field(default_factory=list)


class ReputationEngine:
    """
    Maintains ReputationSnapshot rows for services.

    Snapshots are a cache over the payment ledger; the ledger stays the
    source of truth and any snapshot can be rebuilt with ``recompute``.
    """

    def __init__(
        self,
        store: LedgerStore,
        mode: ReputationMode | str = ReputationMode.BATCH,
        cache: ReputationCache | None = None,
    ) -> None:
        """
        Args:
            store: Ledger store holding payments, feedback and snapshots
            mode: ``batch`` (scheduled recompute) or ``incremental``
                (rescore on every settlement)
            cache: Optional advisory read-through cache
        """
        self._store = store
        self._mode = ReputationMode(mode)
        self._cache = cache
        self._locks = LockService(store.storage)

    @property
    def mode(self) -> ReputationMode:
        return self._mode

    # ─── Query surface ───────────────────────────────────────────────

    async def get_reputation(self, service_id: str) -> ReputationSnapshot | None:
        """Latest snapshot, via the cache when one is configured."""
        if self._cache is None:
            return await self._store.get_reputation(service_id)

        snapshot, _ = await self._cache.get_or_fetch(
            service_id, lambda: self._store.get_reputation(service_id)
        )
        return snapshot

    async def top_services(
        self,
        category: str | None = None,
        limit: int = 10,
    ) -> list[tuple[ServiceListing, ReputationSnapshot | None]]:
        """Active services ordered by stored reputation score, best first."""
        ranked = []
        for service in await self._store.list_services(active_only=True, category=category):
            ranked.append((service, await self.get_reputation(service.service_id)))

        ranked.sort(
            key=lambda pair: (
                -(pair[1].reputation_score if pair[1] else 0.0),
                pair[0].service_id,
            )
        )
        return ranked[:limit]

    # ─── Batch mode ──────────────────────────────────────────────────

    async def _settled_payments(self, service_id: str) -> list[PaymentRecord]:
        return await self._store.list_payments(
            service_id=service_id,
            status=[PaymentStatus.SUCCESS, PaymentStatus.FAILED],
        )

    async def _feedback_for(self, service_id: str) -> list[FeedbackRecord]:
        service = await self._store.get_service(service_id)
        if service is None or not service.owner_address:
            return []
        return await self._store.list_feedback(subject=service.owner_address)

    async def _publish(self, snapshot: ReputationSnapshot) -> None:
        await self._store.save_reputation(snapshot)
        if self._cache is not None:
            await self._cache.invalidate(snapshot.service_id)

    async def recompute(
        self,
        service_id: str,
        now: datetime | None = None,
    ) -> ReputationSnapshot:
        """Recompute one service from its full history and upsert the snapshot."""
        snapshot = compute_reputation(
            service_id,
            await self._settled_payments(service_id),
            now=now,
            feedback=await self._feedback_for(service_id),
        )
        await self._publish(snapshot)
        logger.debug(
            f"Recomputed {service_id}: score={snapshot.reputation_score} "
            f"payments={snapshot.total_payments}"
        )
        return snapshot

    async def recompute_all(self, now: datetime | None = None) -> RecomputeResult:
        """
        Batch recompute over all active services.

        In incremental mode each service is reconciled instead, which also
        resets its running statistics to the ledger. A failure on one
        service is logged and counted; the pass continues.
        """
        if now is None:
            now = utcnow()

        result = RecomputeResult()
        for service in await self._store.list_services(active_only=True):
            try:
                if self._mode == ReputationMode.INCREMENTAL:
                    await self.reconcile(service.service_id, now=now)
                else:
                    await self.recompute(service.service_id, now=now)
                result.updated += 1
            except Exception as e:
                logger.error(f"Failed to recompute reputation for {service.service_id}: {e}")
                result.failed += 1
                result.failed_services.append(service.service_id)

        logger.info(f"Reputation recompute finished: updated={result.updated} failed={result.failed}")
        return result

    # ─── Incremental mode ────────────────────────────────────────────

    async def apply_settlement(
        self,
        payment: PaymentRecord,
        now: datetime | None = None,
    ) -> ReputationSnapshot | None:
        """
        React to a payment that has just become settled.

        Callers invoke this once per pending→settled transition (or once per
        newly inserted settled row). In batch mode it only drops the cached
        snapshot; the scheduled recompute picks the payment up.

        Returns:
            The refreshed snapshot in incremental mode, else None.
        """
        if not payment.service_id or not payment.status.is_settled:
            return None

        if self._mode == ReputationMode.BATCH:
            if self._cache is not None:
                await self._cache.invalidate(payment.service_id)
            return None

        service_id = payment.service_id
        token = await self._locks.acquire(
            f"reputation:{service_id}", ttl=STATS_LOCK_TTL, retry_count=20, retry_delay=0.05
        )
        if token is None:
            raise StorageUnavailableError(
                f"Could not lock reputation statistics for {service_id}",
                details={"service_id": service_id},
            )

        try:
            raw = await self._store.get_reputation_stats(service_id)
            if raw is None:
                # First settlement seen for this service: the ledger already
                # holds the payment, so a rebuild covers it.
                stats = PaymentStats.from_payments(await self._settled_payments(service_id))
            else:
                stats = PaymentStats.from_dict(raw)
                stats.add(payment)
            await self._store.save_reputation_stats(service_id, stats.to_dict())
        finally:
            await self._locks.release(f"reputation:{service_id}", token)

        snapshot = score_stats(service_id, stats, now=now, feedback=await self._feedback_for(service_id))
        await self._publish(snapshot)
        return snapshot

    async def reconcile(
        self,
        service_id: str,
        now: datetime | None = None,
    ) -> ReputationSnapshot:
        """Rebuild the incremental statistics from the ledger and rescore."""
        token = await self._locks.acquire(
            f"reputation:{service_id}", ttl=STATS_LOCK_TTL, retry_count=20, retry_delay=0.05
        )
        if token is None:
            raise StorageUnavailableError(
                f"Could not lock reputation statistics for {service_id}",
                details={"service_id": service_id},
            )

        try:
            stats = PaymentStats.from_payments(await self._settled_payments(service_id))
            await self._store.save_reputation_stats(service_id, stats.to_dict())
        finally:
            await self._locks.release(f"reputation:{service_id}", token)

        snapshot = score_stats(service_id, stats, now=now, feedback=await self._feedback_for(service_id))
        await self._publish(snapshot)
        return snapshot
