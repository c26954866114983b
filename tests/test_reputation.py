"""
Tests for reputation scoring, the engine's batch and incremental modes,
and the snapshot cache.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from fakes import NOW, OWNER, PAYER
from paytrail.core.types import (
    FeedbackRecord,
    PaymentRecord,
    PaymentStatus,
    ReputationSnapshot,
    ServiceListing,
)
from paytrail.reputation.cache import ReputationCache
from paytrail.reputation.engine import ReputationEngine, ReputationMode
from paytrail.reputation.scoring import PaymentStats, compute_reputation, recency_weight

SERVICE_ID = "svc-translate"


def _payment(index, payer, status=PaymentStatus.SUCCESS, amount="5", latency=150, timestamp=NOW):
    return PaymentRecord(
        payment_id=f"0x{index:02x}:0",
        tx_hash=f"0x{index:02x}",
        from_address=payer,
        to_address=OWNER,
        amount=Decimal(amount),
        service_id=SERVICE_ID,
        status=status,
        latency_ms=latency,
        timestamp=timestamp,
    )


def _reference_history():
    """10 payments, 9 succeeded, $50 volume, 7 unique payers."""
    payers = [f"0x{n:040x}" for n in (1, 1, 2, 2, 3, 3, 4, 5, 6, 7)]
    payments = [_payment(i, payer) for i, payer in enumerate(payers)]
    payments[-1].status = PaymentStatus.FAILED
    return payments


class TestScoring:
    def test_reference_history(self):
        snapshot = compute_reputation(SERVICE_ID, _reference_history(), now=NOW)

        assert snapshot.total_payments == 10
        assert snapshot.successful_payments == 9
        assert snapshot.failed_payments == 1
        assert snapshot.unique_payers == 7
        assert snapshot.repeat_customers == 3
        assert snapshot.total_volume == Decimal("50")
        assert snapshot.reliability_score == 90.0
        assert snapshot.speed_score == 98.5
        assert snapshot.volume_score == 5.0
        assert snapshot.repeat_score == 30.0
        assert snapshot.recency_weight == 1.0
        assert snapshot.reputation_score == pytest.approx(62.7)

    def test_deterministic(self):
        history = _reference_history()
        first = compute_reputation(SERVICE_ID, history, now=NOW)
        second = compute_reputation(SERVICE_ID, list(reversed(history)), now=NOW)
        assert first.to_dict() == second.to_dict()

    def test_no_payments_scores_zero(self):
        snapshot = compute_reputation(SERVICE_ID, [], now=NOW)
        assert snapshot.reputation_score == 0.0
        assert snapshot.recency_weight == 1.0
        assert snapshot.total_payments == 0

    def test_pending_payments_ignored(self):
        history = _reference_history()
        history.append(_payment(99, PAYER, status=PaymentStatus.PENDING, amount="500"))

        snapshot = compute_reputation(SERVICE_ID, history, now=NOW)

        assert snapshot.total_payments == 10
        assert snapshot.total_volume == Decimal("50")

    def test_volume_saturates(self):
        snapshot = compute_reputation(SERVICE_ID, [_payment(1, PAYER, amount="5000")], now=NOW)
        assert snapshot.volume_score == 100.0

    def test_missing_latency_not_averaged(self):
        history = [_payment(1, PAYER, latency=300), _payment(2, PAYER, latency=None)]
        snapshot = compute_reputation(SERVICE_ID, history, now=NOW)
        assert snapshot.avg_latency_ms == 300.0

    def test_recency_decay_and_floor(self):
        assert recency_weight(None, NOW) == 1.0
        assert recency_weight(NOW - timedelta(days=73), NOW) == pytest.approx(0.8)
        assert recency_weight(NOW - timedelta(days=400), NOW) == 0.5

    def test_old_history_is_discounted(self):
        old = [_payment(i, PAYER, timestamp=NOW - timedelta(days=500)) for i in range(3)]
        fresh = [_payment(i, PAYER) for i in range(3)]

        old_score = compute_reputation(SERVICE_ID, old, now=NOW).reputation_score
        fresh_score = compute_reputation(SERVICE_ID, fresh, now=NOW).reputation_score

        assert old_score == pytest.approx(fresh_score * 0.5, abs=0.01)

    def test_feedback_summary(self):
        feedback = [
            FeedbackRecord(OWNER, PAYER, "q", score, "", f"0x{score}", 0, 1, NOW)
            for score in (80, 90)
        ]
        snapshot = compute_reputation(SERVICE_ID, [], now=NOW, feedback=feedback)
        assert snapshot.feedback_count == 2
        assert snapshot.avg_feedback_score == 85.0

    def test_stats_round_trip(self):
        stats = PaymentStats.from_payments(_reference_history())
        restored = PaymentStats.from_dict(stats.to_dict())
        assert restored == stats


class TestEngine:
    @pytest.mark.asyncio
    async def test_batch_recompute(self, store, service):
        await store.save_service(service)
        for payment in _reference_history():
            await store.upsert_payment(payment)

        engine = ReputationEngine(store, mode=ReputationMode.BATCH)
        snapshot = await engine.recompute(SERVICE_ID, now=NOW)

        assert snapshot.reputation_score == pytest.approx(62.7)
        assert (await store.get_reputation(SERVICE_ID)).reputation_score == snapshot.reputation_score

    @pytest.mark.asyncio
    async def test_batch_mode_does_not_rescore_on_settlement(self, store, service):
        await store.save_service(service)
        engine = ReputationEngine(store, mode=ReputationMode.BATCH)
        payment = _payment(1, PAYER)
        await store.upsert_payment(payment)

        assert await engine.apply_settlement(payment, now=NOW) is None
        assert await store.get_reputation(SERVICE_ID) is None

    @pytest.mark.asyncio
    async def test_incremental_matches_batch(self, store, service):
        await store.save_service(service)
        engine = ReputationEngine(store, mode=ReputationMode.INCREMENTAL)

        for payment in _reference_history():
            await store.upsert_payment(payment)
            incremental = await engine.apply_settlement(payment, now=NOW)

        batch = compute_reputation(SERVICE_ID, _reference_history(), now=NOW)
        assert incremental.to_dict() == batch.to_dict()

    @pytest.mark.asyncio
    async def test_incremental_ignores_pending(self, store, service):
        await store.save_service(service)
        engine = ReputationEngine(store, mode=ReputationMode.INCREMENTAL)
        pending = _payment(1, PAYER, status=PaymentStatus.PENDING)

        assert await engine.apply_settlement(pending, now=NOW) is None

    @pytest.mark.asyncio
    async def test_reconcile_repairs_drift(self, store, service):
        await store.save_service(service)
        engine = ReputationEngine(store, mode=ReputationMode.INCREMENTAL)
        for payment in _reference_history():
            await store.upsert_payment(payment)
        await store.save_reputation_stats(SERVICE_ID, PaymentStats(total=1, successful=1).to_dict())

        snapshot = await engine.reconcile(SERVICE_ID, now=NOW)

        assert snapshot.total_payments == 10
        assert snapshot.reputation_score == pytest.approx(62.7)

    @pytest.mark.asyncio
    async def test_feedback_uses_owner_address(self, store, service):
        await store.save_service(service)
        await store.add_feedback(FeedbackRecord(OWNER, PAYER, "q", 60, "", "0xfb", 0, 1, NOW))

        snapshot = await ReputationEngine(store).recompute(SERVICE_ID, now=NOW)

        assert snapshot.feedback_count == 1
        assert snapshot.avg_feedback_score == 60.0

    @pytest.mark.asyncio
    async def test_recompute_all_continues_past_failures(self, store, service):
        await store.save_service(service)
        await store.save_service(ServiceListing("svc-other", "Other", PAYER))
        engine = ReputationEngine(store)
        original = engine.recompute

        async def flaky(service_id, now=None):
            if service_id == "svc-other":
                raise RuntimeError("boom")
            return await original(service_id, now=now)

        with patch.object(engine, "recompute", side_effect=flaky):
            result = await engine.recompute_all(now=NOW)

        assert result.updated == 1
        assert result.failed == 1
        assert result.failed_services == ["svc-other"]

    @pytest.mark.asyncio
    async def test_top_services(self, store, service):
        await store.save_service(service)
        await store.save_service(ServiceListing("svc-other", "Other", PAYER))
        await store.save_reputation(ReputationSnapshot("svc-other", reputation_score=90.0))
        await store.save_reputation(ReputationSnapshot(SERVICE_ID, reputation_score=40.0))

        ranked = await ReputationEngine(store).top_services(limit=5)

        assert [s.service_id for s, _ in ranked] == ["svc-other", SERVICE_ID]


class TestCache:
    @pytest.mark.asyncio
    async def test_get_or_fetch(self, storage):
        cache = ReputationCache(storage, ttl=60)
        calls = []

        async def fetch():
            calls.append(1)
            return ReputationSnapshot(SERVICE_ID, reputation_score=70.0)

        first, hit_first = await cache.get_or_fetch(SERVICE_ID, fetch)
        second, hit_second = await cache.get_or_fetch(SERVICE_ID, fetch)

        assert (hit_first, hit_second) == (False, True)
        assert second.reputation_score == 70.0
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss(self, storage):
        cache = ReputationCache(storage)
        await cache.set(ReputationSnapshot(SERVICE_ID), ttl=-1)
        assert await cache.get(SERVICE_ID) is None

    @pytest.mark.asyncio
    async def test_recompute_invalidates(self, store, storage, service):
        await store.save_service(service)
        cache = ReputationCache(storage)
        engine = ReputationEngine(store, cache=cache)
        await cache.set(ReputationSnapshot(SERVICE_ID, reputation_score=1.0))

        await store.upsert_payment(_payment(1, PAYER))
        await engine.recompute(SERVICE_ID, now=NOW)

        assert await cache.get(SERVICE_ID) is None
        fresh = await engine.get_reputation(SERVICE_ID)
        assert fresh.total_payments == 1
