"""
Transaction Confirmation Indexer.

Polls receipts for tracked transactions that have not reached a verdict and
reconciles the rows they settle:

- payment: pending payment moves to success (mined, status 1) or failed
  (reverted)
- session_deposit: a reverted deposit deactivates the session it funded
- refund: the verdict is recorded on the tracked row

Classification:

- expired: past ``expires_at`` and still no hash. Terminal, never polled again.
- pending: no hash yet, or no receipt yet.
- confirmed: receipt status 1.
- failed: receipt status 0 (reverted).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from paytrail.chain.reader import ChainReader, Receipt
from paytrail.core.config import Config
from paytrail.core.logging import get_logger
from paytrail.core.types import (
    PaymentStatus,
    SessionStatus,
    TrackedTransaction,
    TransactionKind,
    TransactionStatus,
    utcnow,
)
from paytrail.ledger.lock import LockService
from paytrail.ledger.store import LedgerStore
from paytrail.reputation.engine import ReputationEngine

logger = get_logger("indexer.transaction")

RUN_LOCK_TTL = 300
DEPOSIT_REVERTED = "deposit_reverted"


async def track_transaction(
    store: LedgerStore,
    kind: TransactionKind,
    reference_id: str,
    tx_hash: str | None = None,
    ttl_seconds: int = 600,
) -> TrackedTransaction:
    """
    Register a transaction for confirmation polling.

    Rows with a hash start as ``broadcast``; rows without one stay
    ``pending`` until a hash is attached or ``ttl_seconds`` pass.
    """
    now = utcnow()
    tx = TrackedTransaction(
        kind=kind,
        reference_id=reference_id,
        tx_hash=tx_hash,
        status=TransactionStatus.BROADCAST if tx_hash else TransactionStatus.PENDING,
        expires_at=now + timedelta(seconds=ttl_seconds),
        created_at=now,
    )
    await store.save_transaction(tx)
    return tx


@dataclass
class ConfirmationRunResult:
    skipped: bool = False
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    pending: int = 0
    expired: int = 0
    errors: int = 0


class TransactionIndexer:
    """Confirmation poller over tracked transactions."""

    name = "transaction"

    def __init__(
        self,
        reader: ChainReader,
        store: LedgerStore,
        config: Config,
        reputation: ReputationEngine | None = None,
    ) -> None:
        self._reader = reader
        self._store = store
        self._config = config
        self._reputation = reputation
        self._locks = LockService(store.storage)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self, now: datetime | None = None) -> ConfirmationRunResult:
        """Check up to ``batch_size`` unresolved transactions, oldest first."""
        result = ConfirmationRunResult()

        if self._running:
            result.skipped = True
            return result

        self._running = True
        token = None
        try:
            token = await self._locks.acquire(f"indexer:{self.name}", ttl=RUN_LOCK_TTL)
            if token is None:
                result.skipped = True
                return result

            if now is None:
                now = utcnow()
            batch = await self._store.unresolved_transactions(self._config.batch_size)
            for tx in batch:
                result.checked += 1
                status = await self._check(tx, now)
                if status == TransactionStatus.CONFIRMED:
                    result.confirmed += 1
                elif status == TransactionStatus.FAILED:
                    result.failed += 1
                elif status == TransactionStatus.EXPIRED:
                    result.expired += 1
                else:
                    result.pending += 1
        finally:
            if token is not None:
                await self._locks.release(f"indexer:{self.name}", token)
            self._running = False

        if result.checked:
            logger.info(
                f"Confirmation run: checked={result.checked} confirmed={result.confirmed} "
                f"failed={result.failed} pending={result.pending} expired={result.expired}"
            )
        return result

    async def _check(self, tx: TrackedTransaction, now: datetime) -> TransactionStatus:
        if not tx.tx_hash:
            if now >= tx.expires_at:
                tx.status = TransactionStatus.EXPIRED
                tx.error_message = "Expired before a transaction hash was attached"
                await self._store.save_transaction(tx)
                await self._reconcile(tx)
                return TransactionStatus.EXPIRED
            return TransactionStatus.PENDING

        receipt = await self._reader.get_receipt(tx.tx_hash)
        if receipt is None:
            if tx.status == TransactionStatus.PENDING:
                tx.status = TransactionStatus.BROADCAST
                await self._store.save_transaction(tx)
            return TransactionStatus.PENDING

        self._apply_receipt(tx, receipt)
        await self._store.save_transaction(tx)
        await self._reconcile(tx)
        return tx.status

    @staticmethod
    def _apply_receipt(tx: TrackedTransaction, receipt: Receipt) -> None:
        tx.block_number = receipt.block_number
        tx.block_hash = receipt.block_hash
        tx.gas_used = receipt.gas_used
        if receipt.succeeded:
            tx.status = TransactionStatus.CONFIRMED
        else:
            tx.status = TransactionStatus.FAILED
            tx.error_message = "Transaction reverted"

    # ─── Reconciliation ──────────────────────────────────────────────

    async def _reconcile(self, tx: TrackedTransaction) -> None:
        if tx.kind == TransactionKind.PAYMENT:
            await self._reconcile_payment(tx)
        elif tx.kind == TransactionKind.SESSION_DEPOSIT:
            await self._reconcile_deposit(tx)
        elif tx.kind == TransactionKind.REFUND:
            if tx.status == TransactionStatus.CONFIRMED:
                logger.info(f"Refund for session {tx.reference_id} confirmed ({tx.tx_hash})")
            else:
                logger.error(
                    f"Refund for session {tx.reference_id} {tx.status.value}: {tx.error_message}"
                )

    async def _reconcile_payment(self, tx: TrackedTransaction) -> None:
        if tx.status == TransactionStatus.CONFIRMED:
            target = PaymentStatus.SUCCESS
        elif tx.status == TransactionStatus.FAILED:
            target = PaymentStatus.FAILED
        else:
            # An expired payment never reached the chain; nothing to settle
            return

        updated = await self._store.transition_payment(
            tx.reference_id, target, block_number=tx.block_number
        )
        if updated is not None and self._reputation is not None:
            await self._reputation.apply_settlement(updated)

    async def _reconcile_deposit(self, tx: TrackedTransaction) -> None:
        if tx.status != TransactionStatus.FAILED:
            return

        session = await self._store.compare_and_update_session(
            tx.reference_id,
            expected={"is_active": True},
            updates={
                "is_active": False,
                "status": SessionStatus.CLOSED.value,
                "close_reason": DEPOSIT_REVERTED,
                "closed_at": utcnow().isoformat(),
            },
        )
        if session is not None:
            logger.warning(
                f"Deposit {tx.tx_hash} for session {tx.reference_id} reverted; session deactivated"
            )
