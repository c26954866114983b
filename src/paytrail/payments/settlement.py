"""
Settlement Recorder.

Write path for the gasless settlement handshake: once a facilitator has
settled a per-call charge, the service records it here. The row is keyed
``x402_{tx_hash}`` and stays pending until either the facilitator vouches
for it (``confirmed=True``), the confirmation indexer sees the receipt, or
the payment indexer picks up the matching Transfer log.
"""

from __future__ import annotations

from paytrail.core.config import Config
from paytrail.core.exceptions import ValidationError
from paytrail.core.logging import get_logger
from paytrail.core.types import (
    AmountType,
    PaymentRecord,
    PaymentStatus,
    TransactionKind,
    to_decimal,
    utcnow,
)
from paytrail.indexer.transaction import track_transaction
from paytrail.ledger.store import LedgerStore
from paytrail.reputation.engine import ReputationEngine

logger = get_logger("payments.settlement")


def settlement_payment_id(tx_hash: str) -> str:
    return f"x402_{tx_hash}"


class SettlementRecorder:
    """Records facilitator-settled payments into the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        config: Config,
        reputation: ReputationEngine | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._reputation = reputation

    async def record_settlement(
        self,
        service_id: str,
        from_address: str,
        to_address: str,
        amount: AmountType,
        tx_hash: str,
        latency_ms: int | None = None,
        confirmed: bool = False,
    ) -> PaymentRecord:
        """
        Upsert the settlement's payment row and track its transaction.

        Replaying the same settlement is safe: a settled row is returned
        unchanged and no second tracked transaction is created.
        """
        if not tx_hash:
            raise ValidationError("Settlement transaction hash is required")
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Settlement amount must be positive", details={"amount": str(amount)})

        payment_id = settlement_payment_id(tx_hash)
        existing = await self._store.get_payment(payment_id)
        if existing is not None and existing.status.is_settled:
            return existing

        record = PaymentRecord(
            payment_id=payment_id,
            tx_hash=tx_hash,
            from_address=from_address.lower(),
            to_address=to_address.lower(),
            amount=amount,
            service_id=service_id,
            asset=self._config.payment_token_address,
            status=PaymentStatus.SUCCESS if confirmed else PaymentStatus.PENDING,
            latency_ms=latency_ms,
            timestamp=utcnow(),
        )
        stored, written = await self._store.upsert_payment(record)

        if existing is None:
            await track_transaction(
                self._store,
                TransactionKind.PAYMENT,
                payment_id,
                tx_hash=tx_hash,
                ttl_seconds=self._config.pending_tx_ttl,
            )

        if written and stored.status == PaymentStatus.SUCCESS and self._reputation is not None:
            await self._reputation.apply_settlement(stored)

        logger.info(
            f"Recorded settlement {payment_id} for {service_id}: {amount} "
            f"({stored.status.value})"
        )
        return stored
