"""
Type definitions for PayTrail.

Ledger rows, escrow sessions, reputation snapshots and the small records
that tie them together. Every persisted type round-trips through
``to_dict()`` / ``from_dict()`` so it can live in any StorageBackend.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, TypeAlias

# Type alias for flexible amount input
AmountType: TypeAlias = Decimal | int | float | str


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def to_decimal(value: AmountType | None) -> Decimal:
    """Normalize an amount to Decimal (floats go through str to avoid binary noise)."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PaymentStatus(str, Enum):
    """Settlement state of a payment record."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_settled(self) -> bool:
        return self in (PaymentStatus.SUCCESS, PaymentStatus.FAILED)


class SessionStatus(str, Enum):
    """Escrow session lifecycle."""

    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    CLOSED = "closed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.CLOSED, SessionStatus.EXPIRED)


class TransactionStatus(str, Enum):
    """States of a tracked on-chain transaction."""

    PENDING = "pending"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


class TransactionKind(str, Enum):
    """What a tracked transaction settles."""

    PAYMENT = "payment"
    SESSION_DEPOSIT = "session_deposit"
    REFUND = "refund"


class PaymentMethod(str, Enum):
    """How a hired task is paid for."""

    SESSION = "session"
    DIRECT = "direct"


class TaskState(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Ledger rows
# ---------------------------------------------------------------------------


@dataclass
class PaymentRecord:
    """
    A pay-per-use payment to a service.

    Immutable once settled. The natural key is ``payment_id``: indexed
    transfers use ``{tx_hash}:{log_index}``, settlement-recorded payments
    use ``x402_{tx_hash}``.
    """

    payment_id: str
    tx_hash: str
    from_address: str
    to_address: str
    amount: Decimal
    service_id: str | None = None
    asset: str = ""
    status: PaymentStatus = PaymentStatus.PENDING
    block_number: int | None = None
    latency_ms: int | None = None
    timestamp: datetime = field(default_factory=utcnow)
    log_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "payment_id": self.payment_id,
            "tx_hash": self.tx_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": str(self.amount),
            "service_id": self.service_id,
            "asset": self.asset,
            "status": self.status.value,
            "block_number": self.block_number,
            "latency_ms": self.latency_ms,
            "timestamp": _dt(self.timestamp),
            "log_index": self.log_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentRecord:
        return cls(
            payment_id=data["payment_id"],
            tx_hash=data.get("tx_hash", ""),
            from_address=data.get("from_address", ""),
            to_address=data.get("to_address", ""),
            amount=to_decimal(data.get("amount", "0")),
            service_id=data.get("service_id"),
            asset=data.get("asset", ""),
            status=PaymentStatus(data.get("status", PaymentStatus.PENDING.value)),
            block_number=data.get("block_number"),
            latency_ms=data.get("latency_ms"),
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
            log_index=data.get("log_index"),
        )


@dataclass
class FeedbackRecord:
    """On-chain feedback about a subject address. Append-only."""

    subject: str
    submitter: str
    tag: str
    score: int
    comment: str
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: datetime

    @property
    def feedback_id(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedback_id": self.feedback_id,
            "subject": self.subject,
            "submitter": self.submitter,
            "tag": self.tag,
            "score": self.score,
            "comment": self.comment,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "timestamp": _dt(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackRecord:
        return cls(
            subject=data["subject"],
            submitter=data["submitter"],
            tag=data.get("tag", ""),
            score=int(data["score"]),
            comment=data.get("comment", ""),
            tx_hash=data["tx_hash"],
            log_index=int(data["log_index"]),
            block_number=int(data["block_number"]),
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
        )


@dataclass
class ReputationSnapshot:
    """
    Cached trust score for a service.

    Recomputable from the payment ledger at any time; never the source of
    truth.
    """

    service_id: str
    total_payments: int = 0
    successful_payments: int = 0
    failed_payments: int = 0
    avg_latency_ms: float = 0.0
    unique_payers: int = 0
    repeat_customers: int = 0
    total_volume: Decimal = Decimal("0")
    reputation_score: float = 0.0
    success_rate: float = 0.0
    recency_weight: float = 1.0
    reliability_score: float = 0.0
    speed_score: float = 0.0
    volume_score: float = 0.0
    repeat_score: float = 0.0
    feedback_count: int = 0
    avg_feedback_score: float | None = None
    last_calculated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "total_payments": self.total_payments,
            "successful_payments": self.successful_payments,
            "failed_payments": self.failed_payments,
            "avg_latency_ms": self.avg_latency_ms,
            "unique_payers": self.unique_payers,
            "repeat_customers": self.repeat_customers,
            "total_volume": str(self.total_volume),
            "reputation_score": self.reputation_score,
            "success_rate": self.success_rate,
            "recency_weight": self.recency_weight,
            "reliability_score": self.reliability_score,
            "speed_score": self.speed_score,
            "volume_score": self.volume_score,
            "repeat_score": self.repeat_score,
            "feedback_count": self.feedback_count,
            "avg_feedback_score": self.avg_feedback_score,
            "last_calculated": _dt(self.last_calculated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReputationSnapshot:
        return cls(
            service_id=data["service_id"],
            total_payments=int(data.get("total_payments", 0)),
            successful_payments=int(data.get("successful_payments", 0)),
            failed_payments=int(data.get("failed_payments", 0)),
            avg_latency_ms=float(data.get("avg_latency_ms", 0.0)),
            unique_payers=int(data.get("unique_payers", 0)),
            repeat_customers=int(data.get("repeat_customers", 0)),
            total_volume=to_decimal(data.get("total_volume", "0")),
            reputation_score=float(data.get("reputation_score", 0.0)),
            success_rate=float(data.get("success_rate", 0.0)),
            recency_weight=float(data.get("recency_weight", 1.0)),
            reliability_score=float(data.get("reliability_score", 0.0)),
            speed_score=float(data.get("speed_score", 0.0)),
            volume_score=float(data.get("volume_score", 0.0)),
            repeat_score=float(data.get("repeat_score", 0.0)),
            feedback_count=int(data.get("feedback_count", 0)),
            avg_feedback_score=data.get("avg_feedback_score"),
            last_calculated=_parse_dt(data.get("last_calculated")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


@dataclass
class EscrowSession:
    """
    A pre-funded, budget-capped spending allowance.

    Invariant: 0 <= released <= deposited <= max_spend.
    """

    session_id: str
    owner: str
    max_spend: Decimal
    expires_at: datetime
    escrow_agent: str = ""
    deposited: Decimal = Decimal("0")
    released: Decimal = Decimal("0")
    payment_count: int = 0
    authorized_agents: list[str] = field(default_factory=list)
    status: SessionStatus = SessionStatus.PENDING_PAYMENT
    is_active: bool = False
    created_at: datetime = field(default_factory=utcnow)
    deposit_tx_hash: str | None = None
    refund_amount: Decimal | None = None
    refund_tx_hash: str | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None

    @property
    def spend_ceiling(self) -> Decimal:
        return min(self.deposited, self.max_spend)

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0"), self.spend_ceiling - self.released)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_agent_authorized(self, agent_address: str) -> bool:
        """Empty list means any agent may debit."""
        if not self.authorized_agents:
            return True
        return agent_address.lower() in {a.lower() for a in self.authorized_agents}

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "owner": self.owner,
            "max_spend": str(self.max_spend),
            "expires_at": _dt(self.expires_at),
            "escrow_agent": self.escrow_agent,
            "deposited": str(self.deposited),
            "released": str(self.released),
            "payment_count": self.payment_count,
            "authorized_agents": list(self.authorized_agents),
            "status": self.status.value,
            "is_active": self.is_active,
            "created_at": _dt(self.created_at),
            "deposit_tx_hash": self.deposit_tx_hash,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
            "refund_tx_hash": self.refund_tx_hash,
            "closed_at": _dt(self.closed_at),
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscrowSession:
        refund = data.get("refund_amount")
        return cls(
            session_id=data["session_id"],
            owner=data["owner"],
            max_spend=to_decimal(data["max_spend"]),
            expires_at=_parse_dt(data["expires_at"]),  # type: ignore[arg-type]
            escrow_agent=data.get("escrow_agent", ""),
            deposited=to_decimal(data.get("deposited", "0")),
            released=to_decimal(data.get("released", "0")),
            payment_count=int(data.get("payment_count", 0)),
            authorized_agents=list(data.get("authorized_agents") or []),
            status=SessionStatus(data.get("status", SessionStatus.PENDING_PAYMENT.value)),
            is_active=bool(data.get("is_active", False)),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            deposit_tx_hash=data.get("deposit_tx_hash"),
            refund_amount=to_decimal(refund) if refund is not None else None,
            refund_tx_hash=data.get("refund_tx_hash"),
            closed_at=_parse_dt(data.get("closed_at")),
            close_reason=data.get("close_reason"),
        )


@dataclass
class SessionPayment:
    """One committed debit against an escrow session."""

    session_id: str
    agent_address: str
    amount: Decimal
    execution_id: str
    payment_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tx_hash: str | None = None
    status: PaymentStatus = PaymentStatus.SUCCESS
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "session_id": self.session_id,
            "agent_address": self.agent_address,
            "amount": str(self.amount),
            "execution_id": self.execution_id,
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "created_at": _dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionPayment:
        return cls(
            payment_id=data["payment_id"],
            session_id=data["session_id"],
            agent_address=data["agent_address"],
            amount=to_decimal(data["amount"]),
            execution_id=data["execution_id"],
            tx_hash=data.get("tx_hash"),
            status=PaymentStatus(data.get("status", PaymentStatus.SUCCESS.value)),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class BudgetCheck:
    """Result of a non-mutating budget query."""

    can_afford: bool
    remaining: Decimal
    released: Decimal
    max_spend: Decimal
    reason: str | None = None


@dataclass
class SessionStats:
    """Per-owner totals across every session the owner has opened."""

    total_sessions: int
    active_sessions: int
    total_released: Decimal
    total_payments: int
    average_spend_per_session: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "total_released": str(self.total_released),
            "total_payments": self.total_payments,
            "average_spend_per_session": str(self.average_spend_per_session),
        }


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------


@dataclass
class IndexerCursor:
    """Last fully processed block for one indexer."""

    indexer_name: str
    last_block: int
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "indexer_name": self.indexer_name,
            "last_block": self.last_block,
            "updated_at": _dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexerCursor:
        return cls(
            indexer_name=data["indexer_name"],
            last_block=int(data["last_block"]),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class TrackedTransaction:
    """An on-chain transaction awaiting confirmation."""

    kind: TransactionKind
    reference_id: str
    expires_at: datetime
    tx_hash: str | None = None
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TransactionStatus = TransactionStatus.PENDING
    block_number: int | None = None
    block_hash: str | None = None
    gas_used: int | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "kind": self.kind.value,
            "reference_id": self.reference_id,
            "expires_at": _dt(self.expires_at),
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "gas_used": self.gas_used,
            "error_message": self.error_message,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedTransaction:
        return cls(
            transaction_id=data["transaction_id"],
            kind=TransactionKind(data["kind"]),
            reference_id=data["reference_id"],
            expires_at=_parse_dt(data["expires_at"]),  # type: ignore[arg-type]
            tx_hash=data.get("tx_hash"),
            status=TransactionStatus(data.get("status", TransactionStatus.PENDING.value)),
            block_number=data.get("block_number"),
            block_hash=data.get("block_hash"),
            gas_used=data.get("gas_used"),
            error_message=data.get("error_message"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# Catalog / delegation
# ---------------------------------------------------------------------------


@dataclass
class ServiceListing:
    """A priced, callable capability registered by a provider."""

    service_id: str
    name: str
    owner_address: str
    price_per_call: Decimal = Decimal("0")
    endpoint_url: str | None = None
    category: str | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "name": self.name,
            "owner_address": self.owner_address.lower(),
            "price_per_call": str(self.price_per_call),
            "endpoint_url": self.endpoint_url,
            "category": self.category,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceListing:
        return cls(
            service_id=data["service_id"],
            name=data.get("name", ""),
            owner_address=data.get("owner_address", ""),
            price_per_call=to_decimal(data.get("price_per_call", "0")),
            endpoint_url=data.get("endpoint_url"),
            category=data.get("category"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class TaskRecord:
    """A delegated unit of work, bound to its payment method before execution."""

    requester_id: str
    service_id: str
    budget: Decimal
    cost: Decimal
    payment_method: PaymentMethod
    resource: str | None = None
    task: dict[str, Any] | None = None
    escrow_session_id: str | None = None
    state: TaskState = TaskState.PENDING
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "requester_id": self.requester_id,
            "service_id": self.service_id,
            "budget": str(self.budget),
            "cost": str(self.cost),
            "payment_method": self.payment_method.value,
            "resource": self.resource,
            "task": self.task,
            "escrow_session_id": self.escrow_session_id,
            "state": self.state.value,
            "error": self.error,
            "created_at": _dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        return cls(
            task_id=data["task_id"],
            requester_id=data["requester_id"],
            service_id=data["service_id"],
            budget=to_decimal(data["budget"]),
            cost=to_decimal(data["cost"]),
            payment_method=PaymentMethod(data["payment_method"]),
            resource=data.get("resource"),
            task=data.get("task"),
            escrow_session_id=data.get("escrow_session_id"),
            state=TaskState(data.get("state", TaskState.PENDING.value)),
            error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )
