"""
Payment Indexer: ERC-20 Transfer logs of the payment token.

A transfer becomes a payment when its recipient owns an active service.
Transfers to anyone else are not payments and are skipped without being
counted as failures.
"""

from __future__ import annotations

from paytrail.chain.abi import (
    TRANSFER_TOPIC,
    decode_address,
    decode_uint256,
    from_base_units,
)
from paytrail.chain.reader import ChainReader, Log
from paytrail.core.config import Config
from paytrail.core.exceptions import MalformedEventError
from paytrail.core.types import PaymentRecord, PaymentStatus
from paytrail.indexer.base import BaseIndexer
from paytrail.ledger.store import LedgerStore
from paytrail.reputation.engine import ReputationEngine


class PaymentIndexer(BaseIndexer):
    """
    Indexes token transfers to service owners as successful payments.

    When the settlement recorder has already written the same transfer
    (same tx hash and recipient) the existing row is enriched with the block
    number and moved to success instead of a second row being inserted.
    """

    name = "payment"

    def __init__(
        self,
        reader: ChainReader,
        store: LedgerStore,
        config: Config,
        reputation: ReputationEngine | None = None,
    ) -> None:
        super().__init__(reader, store, config)
        self._reputation = reputation
        self._owners: dict[str, str] = {}

    async def prepare(self) -> None:
        self._owners = await self._store.active_service_owners()

    async def fetch_logs(self, from_block: int, to_block: int) -> list[Log]:
        return await self._reader.query_events(
            from_block,
            to_block,
            address=self._config.payment_token_address,
            topics=[TRANSFER_TOPIC],
        )

    @staticmethod
    def _decode(log: Log) -> tuple[str, str, int]:
        if len(log.topics) != 3 or log.topics[0] != TRANSFER_TOPIC:
            raise MalformedEventError(
                "Not an ERC-20 Transfer log",
                tx_hash=log.transaction_hash,
                log_index=log.log_index,
            )
        try:
            return (
                decode_address(log.topics[1]),
                decode_address(log.topics[2]),
                decode_uint256(log.data, 0),
            )
        except ValueError as e:
            raise MalformedEventError(
                f"Undecodable Transfer: {e}",
                tx_hash=log.transaction_hash,
                log_index=log.log_index,
            ) from e

    async def handle_log(self, log: Log) -> bool:
        sender, recipient, raw_amount = self._decode(log)

        service_id = self._owners.get(recipient)
        if service_id is None:
            return False

        payment_id = f"{log.transaction_hash}:{log.log_index}"
        if await self._store.get_payment(payment_id) is not None:
            return False

        settled = await self._store.find_payment(log.transaction_hash, recipient)
        if settled is not None and settled.log_index is None:
            if settled.status != PaymentStatus.PENDING:
                return False
            updated = await self._store.transition_payment(
                settled.payment_id,
                PaymentStatus.SUCCESS,
                block_number=log.block_number,
            )
            if updated is not None and self._reputation is not None:
                await self._reputation.apply_settlement(updated)
            return updated is not None

        record = PaymentRecord(
            payment_id=payment_id,
            tx_hash=log.transaction_hash,
            from_address=sender,
            to_address=recipient,
            amount=from_base_units(raw_amount, self._config.token_decimals),
            service_id=service_id,
            asset=log.address,
            status=PaymentStatus.SUCCESS,
            block_number=log.block_number,
            timestamp=await self.block_timestamp(log.block_number),
            log_index=log.log_index,
        )
        _, written = await self._store.upsert_payment(record)
        if written and self._reputation is not None:
            await self._reputation.apply_settlement(record)
        return written
