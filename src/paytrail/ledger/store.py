"""
Ledger Store.

Durable record of payments, feedback, reputation snapshots, escrow
sessions, indexer cursors and tracked transactions, layered over the
unified StorageBackend. Every write is an upsert by natural key so
indexers can replay a block range without duplicating rows.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from paytrail.core.logging import get_logger
from paytrail.core.types import (
    EscrowSession,
    FeedbackRecord,
    IndexerCursor,
    PaymentRecord,
    PaymentStatus,
    ReputationSnapshot,
    ServiceListing,
    SessionPayment,
    SessionStatus,
    TaskRecord,
    TaskState,
    TrackedTransaction,
    TransactionStatus,
    utcnow,
)

if TYPE_CHECKING:
    from paytrail.storage.base import StorageBackend

logger = get_logger("ledger.store")


class LedgerStore:
    """
    Typed access to the ledger collections.

    Payment rows are immutable once settled: ``upsert_payment`` never
    overwrites a success/failed row, and ``transition_payment`` is a
    compare-and-set on ``status == pending``.
    """

    PAYMENTS = "payments"
    FEEDBACK = "feedback"
    REPUTATIONS = "reputations"
    REPUTATION_STATS = "reputation_stats"
    SESSIONS = "escrow_sessions"
    SESSION_PAYMENTS = "session_payments"
    CURSORS = "indexer_state"
    TRANSACTIONS = "transactions"
    SERVICES = "services"
    TASKS = "tasks"

    def __init__(self, storage: StorageBackend) -> None:
        """
        Args:
            storage: The unified storage backend (InMemory, Redis, etc.)
        """
        self._storage = storage

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    # ─── Payments ────────────────────────────────────────────────────

    @staticmethod
    def _payment_dict(record: PaymentRecord) -> dict[str, Any]:
        data = record.to_dict()
        data["from_address"] = data["from_address"].lower()
        data["to_address"] = data["to_address"].lower()
        return data

    async def upsert_payment(self, record: PaymentRecord) -> tuple[PaymentRecord, bool]:
        """
        Insert a payment, or refresh a still-pending one.

        Settled rows are left untouched. Fields the new record leaves empty
        keep their stored values.

        Returns:
            (stored record, True if anything was written)
        """
        existing = await self._storage.get(self.PAYMENTS, record.payment_id)
        if existing is None:
            await self._storage.save(self.PAYMENTS, record.payment_id, self._payment_dict(record))
            return record, True

        current = PaymentRecord.from_dict(existing)
        if current.status.is_settled:
            return current, False

        merged = self._payment_dict(record)
        for key, value in existing.items():
            if merged.get(key) is None and value is not None:
                merged[key] = value
        await self._storage.save(self.PAYMENTS, record.payment_id, merged)
        return PaymentRecord.from_dict(merged), True

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        data = await self._storage.get(self.PAYMENTS, payment_id)
        return PaymentRecord.from_dict(data) if data else None

    async def find_payment(self, tx_hash: str, to_address: str) -> PaymentRecord | None:
        """Payment already recorded for the same transfer, from any writer."""
        rows = await self._storage.query(
            self.PAYMENTS,
            filters={"tx_hash": tx_hash, "to_address": to_address.lower()},
            limit=1,
        )
        return PaymentRecord.from_dict(rows[0]) if rows else None

    async def transition_payment(
        self,
        payment_id: str,
        status: PaymentStatus,
        block_number: int | None = None,
    ) -> PaymentRecord | None:
        """
        Move a pending payment to ``status``.

        Returns:
            The updated record, or None if the payment is missing or already settled.
        """
        updates: dict[str, Any] = {"status": status.value}
        if block_number is not None:
            updates["block_number"] = block_number
        data = await self._storage.compare_and_update(
            self.PAYMENTS,
            payment_id,
            expected={"status": PaymentStatus.PENDING.value},
            updates=updates,
        )
        return PaymentRecord.from_dict(data) if data else None

    async def list_payments(
        self,
        service_id: str | None = None,
        status: PaymentStatus | list[PaymentStatus] | None = None,
    ) -> list[PaymentRecord]:
        filters: dict[str, Any] = {}
        if service_id:
            filters["service_id"] = service_id
        if isinstance(status, list):
            filters["status"] = [s.value for s in status]
        elif status:
            filters["status"] = status.value

        rows = await self._storage.query(self.PAYMENTS, filters=filters)
        return [PaymentRecord.from_dict(r) for r in rows]

    async def count_payments(self) -> int:
        return await self._storage.count(self.PAYMENTS)

    # ─── Feedback ────────────────────────────────────────────────────

    async def add_feedback(self, record: FeedbackRecord) -> bool:
        """Append a feedback row. Returns False if it was already recorded."""
        if await self._storage.get(self.FEEDBACK, record.feedback_id) is not None:
            return False
        data = record.to_dict()
        data["subject"] = data["subject"].lower()
        data["submitter"] = data["submitter"].lower()
        await self._storage.save(self.FEEDBACK, record.feedback_id, data)
        return True

    async def list_feedback(self, subject: str | None = None) -> list[FeedbackRecord]:
        filters = {"subject": subject.lower()} if subject else None
        rows = await self._storage.query(self.FEEDBACK, filters=filters)
        return [FeedbackRecord.from_dict(r) for r in rows]

    async def count_feedback(self) -> int:
        return await self._storage.count(self.FEEDBACK)

    # ─── Reputation ──────────────────────────────────────────────────

    async def save_reputation(self, snapshot: ReputationSnapshot) -> None:
        await self._storage.save(self.REPUTATIONS, snapshot.service_id, snapshot.to_dict())

    async def get_reputation(self, service_id: str) -> ReputationSnapshot | None:
        data = await self._storage.get(self.REPUTATIONS, service_id)
        return ReputationSnapshot.from_dict(data) if data else None

    async def get_reputation_stats(self, service_id: str) -> dict[str, Any] | None:
        return await self._storage.get(self.REPUTATION_STATS, service_id)

    async def save_reputation_stats(self, service_id: str, stats: dict[str, Any]) -> None:
        await self._storage.save(self.REPUTATION_STATS, service_id, stats)

    # ─── Escrow sessions ─────────────────────────────────────────────

    async def save_session(self, session: EscrowSession) -> None:
        await self._storage.save(self.SESSIONS, session.session_id, session.to_dict())

    async def get_session(self, session_id: str) -> EscrowSession | None:
        data = await self._storage.get(self.SESSIONS, session_id)
        return EscrowSession.from_dict(data) if data else None

    async def list_sessions(
        self,
        owner: str | None = None,
        status: SessionStatus | None = None,
        is_active: bool | None = None,
    ) -> list[EscrowSession]:
        filters: dict[str, Any] = {}
        if status:
            filters["status"] = status.value
        if is_active is not None:
            filters["is_active"] = is_active

        rows = await self._storage.query(self.SESSIONS, filters=filters)
        sessions = [EscrowSession.from_dict(r) for r in rows]
        if owner:
            sessions = [s for s in sessions if s.owner.lower() == owner.lower()]
        return sessions

    async def debit_session(
        self,
        session_id: str,
        amount: Decimal,
        payment: SessionPayment,
    ) -> EscrowSession | None:
        """
        Atomically add ``amount`` to ``released`` and record ``payment``.

        Applies only while the session is active and
        ``released + amount <= min(deposited, max_spend)``. The payment row
        is keyed by ``(session_id, execution_id)`` and written in the same
        step, so a replayed execution id cannot debit twice.

        Returns:
            The updated session, or None if the debit was not applied.
        """
        data = await self._storage.conditional_add(
            self.SESSIONS,
            session_id,
            "released",
            str(amount),
            ceiling_fields=("deposited", "max_spend"),
            conditions={"is_active": True, "status": SessionStatus.ACTIVE.value},
            counters={"payment_count": 1},
            companion=(
                self.SESSION_PAYMENTS,
                self._session_payment_key(session_id, payment.execution_id),
                payment.to_dict(),
            ),
        )
        return EscrowSession.from_dict(data) if data else None

    async def compare_and_update_session(
        self,
        session_id: str,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> EscrowSession | None:
        data = await self._storage.compare_and_update(self.SESSIONS, session_id, expected, updates)
        return EscrowSession.from_dict(data) if data else None

    @staticmethod
    def _session_payment_key(session_id: str, execution_id: str) -> str:
        return f"{session_id}:{execution_id}"

    async def get_session_payment(
        self,
        session_id: str,
        execution_id: str,
    ) -> SessionPayment | None:
        data = await self._storage.get(
            self.SESSION_PAYMENTS, self._session_payment_key(session_id, execution_id)
        )
        return SessionPayment.from_dict(data) if data else None

    async def list_session_payments(self, session_id: str) -> list[SessionPayment]:
        rows = await self._storage.query(self.SESSION_PAYMENTS, filters={"session_id": session_id})
        payments = [SessionPayment.from_dict(r) for r in rows]
        payments.sort(key=lambda p: p.created_at)
        return payments

    # ─── Indexer cursors ─────────────────────────────────────────────

    async def get_cursor(self, indexer_name: str) -> IndexerCursor | None:
        data = await self._storage.get(self.CURSORS, indexer_name)
        return IndexerCursor.from_dict(data) if data else None

    async def set_cursor(self, indexer_name: str, last_block: int) -> IndexerCursor:
        cursor = IndexerCursor(indexer_name=indexer_name, last_block=last_block)
        await self._storage.save(self.CURSORS, indexer_name, cursor.to_dict())
        return cursor

    # ─── Tracked transactions ────────────────────────────────────────

    async def save_transaction(self, tx: TrackedTransaction) -> None:
        tx.updated_at = utcnow()
        await self._storage.save(self.TRANSACTIONS, tx.transaction_id, tx.to_dict())

    async def get_transaction(self, transaction_id: str) -> TrackedTransaction | None:
        data = await self._storage.get(self.TRANSACTIONS, transaction_id)
        return TrackedTransaction.from_dict(data) if data else None

    async def unresolved_transactions(self, limit: int) -> list[TrackedTransaction]:
        """Tracked transactions still awaiting a verdict, oldest first."""
        rows = await self._storage.query(
            self.TRANSACTIONS,
            filters={
                "status": [TransactionStatus.PENDING.value, TransactionStatus.BROADCAST.value]
            },
        )
        txs = [TrackedTransaction.from_dict(r) for r in rows]
        txs.sort(key=lambda t: t.created_at)
        return txs[:limit]

    async def list_transactions(
        self,
        reference_id: str | None = None,
    ) -> list[TrackedTransaction]:
        filters = {"reference_id": reference_id} if reference_id else None
        rows = await self._storage.query(self.TRANSACTIONS, filters=filters)
        return [TrackedTransaction.from_dict(r) for r in rows]

    # ─── Service catalog ─────────────────────────────────────────────

    async def save_service(self, service: ServiceListing) -> None:
        await self._storage.save(self.SERVICES, service.service_id, service.to_dict())

    async def get_service(self, service_id: str) -> ServiceListing | None:
        data = await self._storage.get(self.SERVICES, service_id)
        return ServiceListing.from_dict(data) if data else None

    async def list_services(
        self,
        active_only: bool = True,
        category: str | None = None,
    ) -> list[ServiceListing]:
        filters: dict[str, Any] = {}
        if active_only:
            filters["is_active"] = True
        if category:
            filters["category"] = category
        rows = await self._storage.query(self.SERVICES, filters=filters)
        return [ServiceListing.from_dict(r) for r in rows]

    async def active_service_owners(self) -> dict[str, str]:
        """Map of lowercased owner address to service_id for active services."""
        owners: dict[str, str] = {}
        for service in await self.list_services(active_only=True):
            # First registration wins when an owner lists several services
            owners.setdefault(service.owner_address.lower(), service.service_id)
        return owners

    # ─── Tasks ───────────────────────────────────────────────────────

    async def save_task(self, task: TaskRecord) -> None:
        await self._storage.save(self.TASKS, task.task_id, task.to_dict())

    async def get_task(self, task_id: str) -> TaskRecord | None:
        data = await self._storage.get(self.TASKS, task_id)
        return TaskRecord.from_dict(data) if data else None

    async def update_task_state(
        self,
        task_id: str,
        state: TaskState,
        error: str | None = None,
    ) -> bool:
        updates: dict[str, Any] = {"state": state.value}
        if error is not None:
            updates["error"] = error
        return await self._storage.update(self.TASKS, task_id, updates)
