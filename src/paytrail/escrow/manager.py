"""
Escrow Session Manager.

Budget-gated spending authority: an owner pre-funds a session once, then
authorized agents debit it per call without another wallet approval.

State machine::

    pending_payment --activate--> active --close/refund--> closed
                                         --expiry--------> expired

Invariant: ``0 <= released <= deposited <= max_spend``, and the
session_payment amounts of a session always sum to ``released``. The debit
is a single conditional update in the storage backend, so concurrent
debits can never both pass the budget check against a stale ``released``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Protocol

from paytrail.chain.abi import to_base_units
from paytrail.core.config import Config
from paytrail.core.exceptions import (
    BudgetExceededError,
    SessionExpiredError,
    SessionInactiveError,
    SessionNotFoundError,
    SessionStateError,
    UnauthorizedAgentError,
    ValidationError,
)
from paytrail.core.logging import get_logger
from paytrail.core.types import (
    AmountType,
    BudgetCheck,
    EscrowSession,
    SessionPayment,
    SessionStats,
    SessionStatus,
    TransactionKind,
    to_decimal,
    utcnow,
)
from paytrail.indexer.transaction import track_transaction
from paytrail.ledger.store import LedgerStore
from paytrail.resilience.retry import execute_with_retry

logger = get_logger("escrow.manager")

AGENT_UPDATE_ATTEMPTS = 8


class RefundSender(Protocol):
    """
    Moves unspent escrow back to the owner. Returns the transfer's tx hash.

    Called at most once per session. ``session_id`` is stable across calls,
    so a sender that dedupes on it can safely be invoked again by an operator
    reconciling a refund whose outcome was lost.
    """

    async def send_refund(
        self,
        to_address: str,
        amount: Decimal,
        session_id: str,
    ) -> str | None: ...


@dataclass
class SessionCreation:
    """A new pending session plus the deposit challenge the owner must pay."""

    session: EscrowSession
    payment_requirements: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session.session_id,
            "session": self.session.to_dict(),
            "paymentRequirements": self.payment_requirements,
        }


@dataclass
class RefundResult:
    session: EscrowSession
    refund_amount: Decimal
    tx_hash: str | None = None
    already_closed: bool = False


class SessionManager:
    """
    Create, fund, debit and close escrow sessions.

    These methods are the only writers of session state. Closing and
    expiry both go through a compare-and-set on ``is_active``, so whichever
    caller flips it pays the refund and every later caller gets a no-op.
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Config,
        refund_sender: RefundSender | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._refund_sender = refund_sender

    # ─── Creation & funding ──────────────────────────────────────────

    def _payment_requirements(self, session: EscrowSession) -> dict[str, Any]:
        """x402 ``exact`` challenge for the session deposit."""
        return {
            "scheme": "exact",
            "network": self._config.network,
            "maxAmountRequired": str(
                to_base_units(session.max_spend, self._config.token_decimals)
            ),
            "resource": f"{self._config.public_host}/api/sessions/{session.session_id}/activate",
            "description": f"Session deposit: {session.max_spend} USDC",
            "payTo": session.escrow_agent,
            "asset": self._config.payment_token_address,
            "maxTimeoutSeconds": self._config.payment_challenge_ttl,
        }

    async def create(
        self,
        owner: str,
        max_spend: AmountType,
        duration_hours: float,
        authorized_agents: list[str] | None = None,
    ) -> SessionCreation:
        """
        Create a pending session and its deposit challenge.

        Raises:
            ValidationError: owner missing, max_spend or duration not positive
        """
        max_spend = to_decimal(max_spend)
        if not owner:
            raise ValidationError("Session owner is required")
        if max_spend <= 0:
            raise ValidationError(
                "max_spend must be positive", details={"max_spend": str(max_spend)}
            )
        if duration_hours <= 0:
            raise ValidationError(
                "duration_hours must be positive", details={"duration_hours": duration_hours}
            )

        now = utcnow()
        session = EscrowSession(
            session_id=f"session_{uuid.uuid4().hex}",
            owner=owner.lower(),
            max_spend=max_spend,
            expires_at=now + timedelta(hours=duration_hours),
            escrow_agent=self._config.escrow_agent_address.lower(),
            authorized_agents=[a.lower() for a in authorized_agents or []],
            created_at=now,
        )
        await self._store.save_session(session)

        logger.info(
            f"Created session {session.session_id} for {session.owner} "
            f"(max_spend={max_spend}, expires_at={session.expires_at.isoformat()})"
        )
        return SessionCreation(session=session, payment_requirements=self._payment_requirements(session))

    async def activate(
        self,
        session_id: str,
        tx_hash: str,
        amount: AmountType,
    ) -> EscrowSession:
        """
        Accept the owner's deposit and open the session for debits.

        The proof is accepted optimistically; a ``session_deposit`` tracked
        transaction lets the confirmation indexer deactivate the session if
        the deposit later turns out to have reverted.
        """
        amount = to_decimal(amount)
        if not tx_hash:
            raise ValidationError("Deposit transaction hash is required")

        session = await self._require(session_id)
        if session.status != SessionStatus.PENDING_PAYMENT:
            raise SessionStateError(
                f"Session {session_id} is {session.status.value}, not pending_payment",
                session_id=session_id,
            )
        if session.is_expired():
            raise SessionExpiredError(f"Session {session_id} expired before funding", session_id)
        if amount <= 0 or amount > session.max_spend:
            raise ValidationError(
                f"Deposit must be in (0, {session.max_spend}]",
                details={"amount": str(amount), "max_spend": str(session.max_spend)},
            )

        activated = await self._store.compare_and_update_session(
            session_id,
            expected={"status": SessionStatus.PENDING_PAYMENT.value},
            updates={
                "status": SessionStatus.ACTIVE.value,
                "is_active": True,
                "deposited": str(amount),
                "deposit_tx_hash": tx_hash,
            },
        )
        if activated is None:
            raise SessionStateError(
                f"Session {session_id} was activated concurrently", session_id=session_id
            )

        await track_transaction(
            self._store,
            TransactionKind.SESSION_DEPOSIT,
            session_id,
            tx_hash=tx_hash,
            ttl_seconds=self._config.pending_tx_ttl,
        )
        logger.info(f"Activated session {session_id} with deposit {amount} ({tx_hash})")
        return activated

    # ─── Spending ────────────────────────────────────────────────────

    async def check_budget(self, session_id: str, amount: AmountType) -> BudgetCheck:
        """
        Non-mutating affordability check. Never raises for session state.

        Raises:
            ValidationError: amount is not positive
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Budget check amount must be positive", details={"amount": str(amount)})
        session = await self._store.get_session(session_id)
        if session is None:
            return BudgetCheck(
                can_afford=False,
                remaining=Decimal("0"),
                released=Decimal("0"),
                max_spend=Decimal("0"),
                reason="Session not found",
            )

        reason = None
        if not session.is_active:
            reason = f"Session is {session.status.value}"
        elif session.is_expired():
            reason = "Session expired"
        elif session.released + amount > session.spend_ceiling:
            reason = f"Insufficient budget: remaining {session.remaining}"

        return BudgetCheck(
            can_afford=reason is None,
            remaining=session.remaining,
            released=session.released,
            max_spend=session.max_spend,
            reason=reason,
        )

    async def debit(
        self,
        session_id: str,
        agent_address: str,
        amount: AmountType,
        execution_id: str,
        tx_hash: str | None = None,
    ) -> SessionPayment:
        """
        Atomically charge ``amount`` to the session.

        A repeated ``execution_id`` returns the payment already recorded for
        it without charging again.

        Raises:
            SessionNotFoundError: unknown session
            UnauthorizedAgentError: agent not on a non-empty allow-list
            SessionExpiredError: past expiry (the session is expired and refunded)
            SessionInactiveError: pending funding, closed or expired
            BudgetExceededError: released + amount > min(deposited, max_spend)
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Debit amount must be positive", details={"amount": str(amount)})
        if not execution_id:
            raise ValidationError("execution_id is required")

        existing = await self._store.get_session_payment(session_id, execution_id)
        if existing is not None:
            return existing

        session = await self._require(session_id)
        if not session.is_agent_authorized(agent_address):
            raise UnauthorizedAgentError(
                f"Agent {agent_address} is not authorized for session {session_id}",
                session_id=session_id,
                agent_address=agent_address,
            )
        if session.is_active and session.is_expired():
            try:
                await self._terminate(session_id, SessionStatus.EXPIRED, "expired")
            except Exception as e:
                # Expiry is committed; refund errors stay in the log
                logger.error(f"Refund after expiry of session {session_id} failed: {e}")
            raise SessionExpiredError(f"Session {session_id} has expired", session_id)
        self._ensure_open(session)

        payment = SessionPayment(
            session_id=session_id,
            agent_address=agent_address.lower(),
            amount=amount,
            execution_id=execution_id,
            tx_hash=tx_hash,
        )
        updated = await self._store.debit_session(session_id, amount, payment)
        if updated is None:
            # Classify the rejection against the current row
            duplicate = await self._store.get_session_payment(session_id, execution_id)
            if duplicate is not None:
                return duplicate
            current = await self._require(session_id)
            self._ensure_open(current)
            raise BudgetExceededError(
                f"Debit of {amount} exceeds session {session_id} budget",
                session_id=session_id,
                requested=amount,
                remaining=current.remaining,
            )

        logger.info(
            f"Debited {amount} from session {session_id} for {payment.agent_address} "
            f"(execution {execution_id}, released={updated.released})"
        )
        return payment

    # ─── Termination ─────────────────────────────────────────────────

    async def close(self, session_id: str, reason: str = "closed") -> RefundResult:
        """End the session and refund ``deposited - released``. Idempotent."""
        return await self._terminate(session_id, SessionStatus.CLOSED, reason)

    async def refund(self, session_id: str) -> RefundResult:
        """Owner-initiated refund of the unspent balance. Closes the session."""
        return await self._terminate(session_id, SessionStatus.CLOSED, "refunded")

    async def expire_stale_sessions(self, now: datetime | None = None) -> list[RefundResult]:
        """Expire and refund every active session past its expiry."""
        if now is None:
            now = utcnow()

        results = []
        for session in await self._store.list_sessions(is_active=True):
            if not session.is_expired(now):
                continue
            try:
                results.append(
                    await self._terminate(session.session_id, SessionStatus.EXPIRED, "expired")
                )
            except Exception as e:
                logger.error(f"Failed to expire session {session.session_id}: {e}")

        if results:
            logger.info(f"Expired {len(results)} stale sessions")
        return results

    async def _terminate(
        self,
        session_id: str,
        status: SessionStatus,
        reason: str,
    ) -> RefundResult:
        now = utcnow()
        ended = await self._store.compare_and_update_session(
            session_id,
            expected={"is_active": True},
            updates={
                "is_active": False,
                "status": status.value,
                "closed_at": now.isoformat(),
                "close_reason": reason,
            },
        )

        if ended is None:
            current = await self._require(session_id)
            if current.status == SessionStatus.PENDING_PAYMENT:
                # Never funded: close without a refund
                ended = await self._store.compare_and_update_session(
                    session_id,
                    expected={"status": SessionStatus.PENDING_PAYMENT.value},
                    updates={
                        "status": status.value,
                        "closed_at": now.isoformat(),
                        "close_reason": reason,
                        "refund_amount": "0",
                    },
                )
                if ended is not None:
                    return RefundResult(session=ended, refund_amount=Decimal("0"))
                current = await self._require(session_id)
            return RefundResult(
                session=current,
                refund_amount=current.refund_amount or Decimal("0"),
                tx_hash=current.refund_tx_hash,
                already_closed=True,
            )

        # is_active is now false, so released can no longer move
        refund_amount = ended.deposited - ended.released
        tx_hash = None
        try:
            if refund_amount > 0 and self._refund_sender is not None:
                # One attempt only: a lost response may still mean a broadcast transfer
                tx_hash = await self._refund_sender.send_refund(ended.owner, refund_amount, session_id)
                if tx_hash:
                    await track_transaction(
                        self._store,
                        TransactionKind.REFUND,
                        session_id,
                        tx_hash=tx_hash,
                        ttl_seconds=self._config.pending_tx_ttl,
                    )
        except Exception as e:
            logger.error(
                f"Refund of {refund_amount} for session {session_id} failed: {e}. "
                f"Session is {status.value}; refund must be reconciled manually."
            )
            raise
        finally:
            recorded = await execute_with_retry(
                self._store.compare_and_update_session,
                session_id,
                {"is_active": False},
                {"refund_amount": str(refund_amount), "refund_tx_hash": tx_hash},
            )
            ended = recorded or ended

        logger.info(
            f"Session {session_id} {status.value} ({reason}): refund {refund_amount}"
            + (f" tx {tx_hash}" if tx_hash else "")
        )
        return RefundResult(session=ended, refund_amount=refund_amount, tx_hash=tx_hash)

    # ─── Agent authorization ─────────────────────────────────────────

    async def authorize_agent(self, session_id: str, agent_address: str) -> EscrowSession:
        """
        Add ``agent_address`` to the session's allow-list.

        On a session whose list is empty (any agent may debit) this narrows
        spending to the named agent.
        """
        agent = agent_address.lower()
        if not agent:
            raise ValidationError("Agent address is required")

        def add(agents: list[str]) -> list[str] | None:
            if agent in agents:
                return None
            return [*agents, agent]

        session = await self._update_agents(session_id, add)
        logger.info(f"Authorized agent {agent} for session {session_id}")
        return session

    async def revoke_agent(self, session_id: str, agent_address: str) -> EscrowSession:
        """
        Remove ``agent_address`` from the session's allow-list.

        Raises:
            ValidationError: the agent is the last one on the list. An empty
                list would let any agent debit, so close the session instead.
        """
        agent = agent_address.lower()

        def remove(agents: list[str]) -> list[str] | None:
            if agent not in agents:
                return None
            if len(agents) == 1:
                raise ValidationError(
                    f"Cannot revoke the last authorized agent of session {session_id}",
                    details={"agent_address": agent},
                )
            return [a for a in agents if a != agent]

        session = await self._update_agents(session_id, remove)
        logger.info(f"Revoked agent {agent} for session {session_id}")
        return session

    async def _update_agents(
        self,
        session_id: str,
        change: Callable[[list[str]], list[str] | None],
    ) -> EscrowSession:
        """Compare-and-set the allow-list of an active session, replaying on contention."""
        for _ in range(AGENT_UPDATE_ATTEMPTS):
            session = await self._require(session_id)
            if session.is_active and session.is_expired():
                raise SessionExpiredError(f"Session {session_id} has expired", session_id)
            self._ensure_open(session)

            agents = change(list(session.authorized_agents))
            if agents is None:
                return session

            updated = await self._store.compare_and_update_session(
                session_id,
                # A one-element any-of filter compares the whole stored list
                expected={"is_active": True, "authorized_agents": [session.authorized_agents]},
                updates={"authorized_agents": agents},
            )
            if updated is not None:
                return updated

        raise SessionStateError(
            f"Agent list of session {session_id} kept changing concurrently", session_id=session_id
        )

    async def get_agent_spend(self, session_id: str, agent_address: str) -> Decimal:
        """Total debited from the session by one agent."""
        agent = agent_address.lower()
        payments = await self._store.list_session_payments(session_id)
        return sum((p.amount for p in payments if p.agent_address == agent), Decimal("0"))

    # ─── Reads ───────────────────────────────────────────────────────

    async def _require(self, session_id: str) -> EscrowSession:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id)
        return session

    @staticmethod
    def _ensure_open(session: EscrowSession) -> None:
        if session.status == SessionStatus.EXPIRED:
            raise SessionExpiredError(f"Session {session.session_id} has expired", session.session_id)
        if not session.is_active or session.status != SessionStatus.ACTIVE:
            raise SessionInactiveError(
                f"Session {session.session_id} is {session.status.value}", session.session_id
            )

    async def get_session(self, session_id: str) -> EscrowSession | None:
        return await self._store.get_session(session_id)

    async def get_active_session(self, owner: str) -> EscrowSession | None:
        """The owner's most recently created active, unexpired session."""
        sessions = [
            s
            for s in await self._store.list_sessions(owner=owner, is_active=True)
            if not s.is_expired()
        ]
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.created_at)

    async def get_session_payments(self, session_id: str) -> list[SessionPayment]:
        return await self._store.list_session_payments(session_id)

    async def get_summary(self, session_id: str) -> dict[str, Any]:
        session = await self._require(session_id)
        payments = await self._store.list_session_payments(session_id)
        utilization = (
            float(round(session.released / session.max_spend * 100, 2)) if session.max_spend else 0.0
        )
        return {
            "session": session.to_dict(),
            "payments": [p.to_dict() for p in payments],
            "total_spent": str(session.released),
            "remaining": str(session.remaining),
            "payment_count": session.payment_count,
            "utilization_percent": utilization,
        }

    async def list_user_sessions(self, owner: str, limit: int = 10) -> list[EscrowSession]:
        """The owner's sessions, newest first."""
        sessions = await self._store.list_sessions(owner=owner)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    async def get_user_stats(self, owner: str) -> SessionStats:
        sessions = await self._store.list_sessions(owner=owner)
        total_released = sum((s.released for s in sessions), Decimal("0"))
        average = total_released / len(sessions) if sessions else Decimal("0")
        return SessionStats(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.is_active),
            total_released=total_released,
            total_payments=sum(s.payment_count for s in sessions),
            average_spend_per_session=average.quantize(Decimal("0.000001")),
        )
