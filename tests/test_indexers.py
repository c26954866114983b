"""Tests for the block range indexers (payments and feedback)."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from fakes import BASE_TIMESTAMP, OWNER, PAYER, STRANGER, address_word
from paytrail.chain.abi import TRANSFER_TOPIC
from paytrail.core.exceptions import ChainUnavailableError
from paytrail.core.types import PaymentStatus
from paytrail.indexer.feedback import FeedbackIndexer
from paytrail.indexer.payment import PaymentIndexer
from paytrail.ledger.lock import LockService
from paytrail.payments.settlement import SettlementRecorder, settlement_payment_id
from paytrail.reputation.engine import ReputationEngine, ReputationMode

USDC = 1_000_000


class TestPaymentIndexer:
    @pytest.mark.asyncio
    async def test_indexes_transfers_to_service_owners(self, chain, store, config, service):
        await store.save_service(service)
        token = config.payment_token_address
        chain.add_transfer(token, PAYER, OWNER, 5 * USDC, block=5, tx_hash="0xaa")
        chain.add_transfer(token, PAYER, STRANGER, 7 * USDC, block=6, tx_hash="0xbb")

        result = await PaymentIndexer(chain.reader(), store, config).run()

        assert result.from_block == 1
        assert result.to_block == 10
        assert result.events == 2
        assert result.indexed == 1
        assert result.ignored == 1
        assert result.failed == 0

        payment = await store.get_payment("0xaa:0")
        assert payment.status == PaymentStatus.SUCCESS
        assert payment.amount == Decimal("5")
        assert payment.service_id == service.service_id
        assert payment.from_address == PAYER
        assert payment.block_number == 5
        assert payment.timestamp == datetime.fromtimestamp(BASE_TIMESTAMP + 5, tz=timezone.utc)
        assert (await store.get_cursor("payment")).last_block == 10

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, chain, store, config, service):
        await store.save_service(service)
        chain.add_transfer(config.payment_token_address, PAYER, OWNER, USDC, block=2, tx_hash="0xaa")
        indexer = PaymentIndexer(chain.reader(), store, config)

        await indexer.run()
        await indexer.resync(0)
        replay = await indexer.run()

        assert replay.indexed == 0
        assert replay.ignored == 1
        assert await store.count_payments() == 1

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards_without_new_blocks(self, chain, store, config):
        indexer = PaymentIndexer(chain.reader(), store, config)
        await indexer.run()

        idle = await indexer.run()

        assert idle.from_block is None
        assert idle.blocks_processed == 0
        assert await indexer.get_cursor() == 10

    @pytest.mark.asyncio
    async def test_range_is_bounded(self, chain, store, config):
        indexer = PaymentIndexer(chain.reader(), store, config.with_updates(max_blocks_per_run=4))

        first = await indexer.run()
        second = await indexer.run()

        assert (first.from_block, first.to_block) == (1, 4)
        assert (second.from_block, second.to_block) == (5, 8)
        assert await indexer.get_cursor() == 8

    @pytest.mark.asyncio
    async def test_lookback_without_start_block(self, chain, store, config):
        indexer = PaymentIndexer(
            chain.reader(), store, config.with_updates(start_block=None, initial_lookback_blocks=3)
        )
        result = await indexer.run()
        assert (result.from_block, result.to_block) == (8, 10)

    @pytest.mark.asyncio
    async def test_chain_failure_leaves_cursor(self, chain, store, config, service):
        await store.save_service(service)
        indexer = PaymentIndexer(chain.reader(), store, config)
        await indexer.run()

        chain.head = 20
        chain.add_transfer(config.payment_token_address, PAYER, OWNER, USDC, block=15, tx_hash="0xcc")
        chain.failing.add("eth_getLogs")

        with pytest.raises(ChainUnavailableError):
            await indexer.run()
        assert await indexer.get_cursor() == 10
        assert not indexer.is_running

        chain.failing.clear()
        recovered = await indexer.run()
        assert recovered.indexed == 1
        assert await indexer.get_cursor() == 20

    @pytest.mark.asyncio
    async def test_malformed_event_is_counted_not_fatal(self, chain, store, config, service):
        await store.save_service(service)
        token = config.payment_token_address
        chain.add_log(token, [TRANSFER_TOPIC, address_word(PAYER)], "0x", block=3, tx_hash="0xbad")
        chain.add_transfer(token, PAYER, OWNER, USDC, block=4, tx_hash="0xgood")

        result = await PaymentIndexer(chain.reader(), store, config).run()

        assert result.failed == 1
        assert result.indexed == 1
        assert await store.get_cursor("payment") is not None

    @pytest.mark.asyncio
    async def test_skips_when_locked_by_another_worker(self, chain, store, config):
        token = await LockService(store.storage).acquire("indexer:payment", ttl=60)
        assert token is not None

        result = await PaymentIndexer(chain.reader(), store, config).run()

        assert result.skipped is True
        assert await store.get_cursor("payment") is None

    @pytest.mark.asyncio
    async def test_enriches_recorded_settlement(self, chain, store, config, service):
        await store.save_service(service)
        recorder = SettlementRecorder(store, config)
        await recorder.record_settlement(service.service_id, PAYER, OWNER, "0.01", "0xsettle")

        chain.add_transfer(
            config.payment_token_address, PAYER, OWNER, 10_000, block=7, tx_hash="0xsettle"
        )
        result = await PaymentIndexer(chain.reader(), store, config).run()

        assert result.indexed == 1
        assert await store.count_payments() == 1
        settled = await store.get_payment(settlement_payment_id("0xsettle"))
        assert settled.status == PaymentStatus.SUCCESS
        assert settled.block_number == 7

    @pytest.mark.asyncio
    async def test_incremental_reputation_updates_on_index(self, chain, store, config, service):
        await store.save_service(service)
        chain.add_transfer(config.payment_token_address, PAYER, OWNER, 2 * USDC, block=2, tx_hash="0xaa")
        engine = ReputationEngine(store, mode=ReputationMode.INCREMENTAL)

        await PaymentIndexer(chain.reader(), store, config, reputation=engine).run()

        snapshot = await store.get_reputation(service.service_id)
        assert snapshot is not None
        assert snapshot.total_payments == 1
        assert snapshot.total_volume == Decimal("2")


class TestFeedbackIndexer:
    @pytest.mark.asyncio
    async def test_indexes_feedback(self, chain, store, config):
        chain.add_feedback(
            config.reputation_registry_address,
            OWNER,
            PAYER,
            tag="quality",
            score=90,
            comment="fast and accurate",
            block=4,
            tx_hash="0xfb",
            log_index=2,
        )

        result = await FeedbackIndexer(chain.reader(), store, config).run()

        assert result.indexed == 1
        rows = await store.list_feedback(subject=OWNER)
        assert len(rows) == 1
        assert rows[0].tag == "quality"
        assert rows[0].score == 90
        assert rows[0].comment == "fast and accurate"
        assert rows[0].submitter == PAYER
        assert rows[0].feedback_id == "0xfb:2"

    @pytest.mark.asyncio
    async def test_empty_strings_decode(self, chain, store, config):
        chain.add_feedback(
            config.reputation_registry_address, OWNER, PAYER, "", 0, "", block=2, tx_hash="0xfb"
        )
        result = await FeedbackIndexer(chain.reader(), store, config).run()

        assert result.indexed == 1
        rows = await store.list_feedback()
        assert rows[0].tag == ""
        assert rows[0].comment == ""

    @pytest.mark.asyncio
    async def test_out_of_range_score_is_malformed(self, chain, store, config):
        chain.add_feedback(
            config.reputation_registry_address, OWNER, PAYER, "x", 150, "", block=2, tx_hash="0xfb"
        )
        result = await FeedbackIndexer(chain.reader(), store, config).run()

        assert result.failed == 1
        assert await store.count_feedback() == 0

    @pytest.mark.asyncio
    async def test_truncated_data_is_malformed(self, chain, store, config):
        registry = config.reputation_registry_address
        chain.add_feedback(registry, OWNER, PAYER, "ok", 50, "fine", block=2, tx_hash="0xgood")
        chain.logs[0]["data"] = chain.logs[0]["data"][:130]

        result = await FeedbackIndexer(chain.reader(), store, config).run()

        assert result.failed == 1
        assert result.indexed == 0

    @pytest.mark.asyncio
    async def test_replay_does_not_duplicate(self, chain, store, config):
        chain.add_feedback(
            config.reputation_registry_address, OWNER, PAYER, "t", 70, "c", block=3, tx_hash="0xfb"
        )
        indexer = FeedbackIndexer(chain.reader(), store, config)

        await indexer.run()
        await indexer.resync(0)
        replay = await indexer.run()

        assert replay.ignored == 1
        assert await store.count_feedback() == 1
