"""Tests for SettlementRecorder."""

from decimal import Decimal

import pytest

from fakes import OWNER, PAYER
from paytrail.core.exceptions import ValidationError
from paytrail.core.types import PaymentStatus, TransactionKind, TransactionStatus
from paytrail.payments.settlement import SettlementRecorder, settlement_payment_id
from paytrail.reputation.engine import ReputationEngine, ReputationMode


class TestSettlementRecorder:
    @pytest.mark.asyncio
    async def test_records_pending_payment_and_tracks_tx(self, store, config, service):
        await store.save_service(service)
        recorder = SettlementRecorder(store, config)

        payment = await recorder.record_settlement(
            service.service_id, PAYER, OWNER, "0.25", "0xabc", latency_ms=120
        )

        assert payment.payment_id == "x402_0xabc"
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal("0.25")
        assert payment.latency_ms == 120
        [tx] = await store.list_transactions(reference_id=payment.payment_id)
        assert tx.kind == TransactionKind.PAYMENT
        assert tx.status == TransactionStatus.BROADCAST
        assert tx.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_replay_tracks_once(self, store, config, service):
        recorder = SettlementRecorder(store, config)

        await recorder.record_settlement(service.service_id, PAYER, OWNER, "1", "0xabc")
        await recorder.record_settlement(service.service_id, PAYER, OWNER, "1", "0xabc")

        assert await store.count_payments() == 1
        assert len(await store.list_transactions(reference_id=settlement_payment_id("0xabc"))) == 1

    @pytest.mark.asyncio
    async def test_settled_row_is_immutable(self, store, config, service):
        recorder = SettlementRecorder(store, config)
        await recorder.record_settlement(service.service_id, PAYER, OWNER, "1", "0xabc", confirmed=True)

        replay = await recorder.record_settlement(service.service_id, PAYER, OWNER, "9", "0xabc")

        assert replay.status == PaymentStatus.SUCCESS
        assert replay.amount == Decimal("1")

    @pytest.mark.asyncio
    async def test_confirmed_settlement_updates_reputation(self, store, config, service):
        await store.save_service(service)
        engine = ReputationEngine(store, mode=ReputationMode.INCREMENTAL)
        recorder = SettlementRecorder(store, config, reputation=engine)

        await recorder.record_settlement(
            service.service_id, PAYER, OWNER, "1", "0xabc", latency_ms=200, confirmed=True
        )

        snapshot = await store.get_reputation(service.service_id)
        assert snapshot.total_payments == 1
        assert snapshot.avg_latency_ms == 200.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,tx_hash", [("0", "0xabc"), ("-1", "0xabc"), ("1", "")])
    async def test_validation(self, store, config, amount, tx_hash):
        recorder = SettlementRecorder(store, config)
        with pytest.raises(ValidationError):
            await recorder.record_settlement("svc", PAYER, OWNER, amount, tx_hash)
