"""
Discovery & Ranking.

Ranks active services for delegation by blending reputation, success rate,
price and latency:

    composite = 0.4 reputation + 0.3 success_rate + 0.2 price_score + 0.1 latency_score
    price_score = max(0, 100 - price_per_call * 100)
    latency_score = max(0, 100 - avg_latency_ms / 10)

Services without payment history rank with reputation 80, success rate 100
and latency 200 ms so new entrants are not buried by a zero score.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from paytrail.core.config import Config
from paytrail.core.exceptions import (
    BudgetExceededError,
    PayTrailError,
    QuoteExceedsBudgetError,
    ServiceNotFoundError,
)
from paytrail.core.logging import get_logger
from paytrail.core.types import (
    AmountType,
    PaymentMethod,
    ReputationSnapshot,
    ServiceListing,
    SessionPayment,
    TaskRecord,
    TaskState,
    to_decimal,
)
from paytrail.discovery.manifest import AgentCard, fetch_agent_card
from paytrail.escrow.manager import SessionManager
from paytrail.ledger.store import LedgerStore
from paytrail.reputation.engine import ReputationEngine

logger = get_logger("discovery.service")

# Optimistic defaults for services with no history
DEFAULT_REPUTATION = 80.0
DEFAULT_SUCCESS_RATE = 100.0
DEFAULT_LATENCY_MS = 200.0

REPUTATION_WEIGHT = 0.4
SUCCESS_RATE_WEIGHT = 0.3
PRICE_WEIGHT = 0.2
LATENCY_WEIGHT = 0.1


def price_score(price_per_call: Decimal) -> float:
    return max(0.0, 100 - float(price_per_call) * 100)


def latency_score(avg_latency_ms: float) -> float:
    return max(0.0, 100 - avg_latency_ms / 10)


@dataclass
class Candidate:
    """A ranked service."""

    service: ServiceListing
    reputation_score: float
    success_rate: float
    avg_latency_ms: float
    price_score: float
    latency_score: float
    composite_score: float
    has_history: bool
    card: AgentCard | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service.service_id,
            "name": self.service.name,
            "owner_address": self.service.owner_address,
            "endpoint_url": self.service.endpoint_url,
            "price_per_call": str(self.service.price_per_call),
            "reputation_score": self.reputation_score,
            "success_rate": self.success_rate,
            "avg_latency_ms": self.avg_latency_ms,
            "composite_score": self.composite_score,
            "has_history": self.has_history,
            "card": self.card.raw if self.card else None,
        }


@dataclass
class HireResult:
    task: TaskRecord
    service: ServiceListing
    payment_method: PaymentMethod
    cost: Decimal
    session_payment: SessionPayment | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task.task_id,
            "service_id": self.service.service_id,
            "cost": str(self.cost),
            "payment_method": self.payment_method.value,
            "escrow_session_id": self.task.escrow_session_id,
            "session_payment_id": self.session_payment.payment_id if self.session_payment else None,
        }


class DiscoveryService:
    """Candidate ranking and budget-aware hiring."""

    def __init__(
        self,
        store: LedgerStore,
        reputation: ReputationEngine,
        sessions: SessionManager,
        config: Config | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._reputation = reputation
        self._sessions = sessions
        self._timeout = config.discovery_timeout if config else 5.0
        self._http_client = http_client
        self._owns_client = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazy-init HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close owned HTTP client."""
        if self._owns_client and self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ─── Ranking ─────────────────────────────────────────────────────

    @staticmethod
    def _score(service: ServiceListing, snapshot: ReputationSnapshot | None) -> Candidate:
        has_history = snapshot is not None and snapshot.total_payments > 0
        if has_history:
            reputation = snapshot.reputation_score  # type: ignore[union-attr]
            success_rate = snapshot.success_rate  # type: ignore[union-attr]
            latency = snapshot.avg_latency_ms or DEFAULT_LATENCY_MS  # type: ignore[union-attr]
        else:
            reputation = DEFAULT_REPUTATION
            success_rate = DEFAULT_SUCCESS_RATE
            latency = DEFAULT_LATENCY_MS

        p_score = price_score(service.price_per_call)
        l_score = latency_score(latency)
        composite = (
            reputation * REPUTATION_WEIGHT
            + success_rate * SUCCESS_RATE_WEIGHT
            + p_score * PRICE_WEIGHT
            + l_score * LATENCY_WEIGHT
        )
        return Candidate(
            service=service,
            reputation_score=reputation,
            success_rate=success_rate,
            avg_latency_ms=latency,
            price_score=round(p_score, 2),
            latency_score=round(l_score, 2),
            composite_score=round(composite, 1),
            has_history=has_history,
        )

    async def discover(
        self,
        category: str | None = None,
        min_reputation: float | None = None,
        max_price_per_call: AmountType | None = None,
        capability: str | None = None,
        limit: int = 20,
        fetch_manifests: bool = False,
    ) -> list[Candidate]:
        """
        Ranked candidates, best first (ties broken by service_id).

        Args:
            category: Only services in this category
            min_reputation: Drop candidates whose (possibly default) reputation is lower
            max_price_per_call: Drop services priced above this
            capability: Require an agent card advertising this capability.
                Services whose card cannot be fetched are excluded.
            limit: Maximum candidates returned
            fetch_manifests: Attach agent cards even without a capability filter
        """
        services = await self._store.list_services(active_only=True, category=category)
        if max_price_per_call is not None:
            ceiling = to_decimal(max_price_per_call)
            services = [s for s in services if s.price_per_call <= ceiling]

        candidates = []
        for service in services:
            candidate = self._score(service, await self._reputation.get_reputation(service.service_id))
            if min_reputation is not None and candidate.reputation_score < min_reputation:
                continue
            candidates.append(candidate)

        if capability or fetch_manifests:
            candidates = await self._attach_cards(candidates, capability)

        candidates.sort(key=lambda c: (-c.composite_score, c.service.service_id))
        logger.info(f"Discovered {len(candidates)} candidates (returning {min(limit, len(candidates))})")
        return candidates[:limit]

    async def _attach_cards(
        self,
        candidates: list[Candidate],
        capability: str | None,
    ) -> list[Candidate]:
        client = await self._get_client()

        async def load(candidate: Candidate) -> AgentCard | None:
            if not candidate.service.endpoint_url:
                return None
            return await fetch_agent_card(client, candidate.service.endpoint_url, self._timeout)

        cards = await asyncio.gather(*(load(c) for c in candidates))

        kept = []
        for candidate, card in zip(candidates, cards):
            candidate.card = card
            if capability:
                if card is None:
                    logger.debug(f"No agent card for {candidate.service.service_id}, excluded")
                    continue
                if not card.has_capability(capability):
                    continue
            kept.append(candidate)
        return kept

    # ─── Hiring ──────────────────────────────────────────────────────

    async def hire(
        self,
        agent_id: str,
        resource_id: str | None,
        budget: AmountType,
        requester_id: str,
        task: dict[str, Any] | None = None,
    ) -> HireResult:
        """
        Delegate a task to a service within ``budget``.

        The requester's active escrow session pays when one exists; otherwise
        the task is bound to direct payment. The task record is written
        before any debit so the chosen payment method is always on file.

        Raises:
            ServiceNotFoundError: unknown or inactive service
            QuoteExceedsBudgetError: price_per_call > budget
            BudgetExceededError: the active session cannot cover the price
        """
        budget = to_decimal(budget)
        service = await self._store.get_service(agent_id)
        if service is None or not service.is_active:
            raise ServiceNotFoundError(f"Service {agent_id} not found", service_id=agent_id)

        cost = service.price_per_call
        if cost > budget:
            raise QuoteExceedsBudgetError(
                f"Cost {cost} exceeds budget {budget}", price=cost, budget=budget
            )

        session = await self._sessions.get_active_session(requester_id) if cost > 0 else None
        if session is not None:
            check = await self._sessions.check_budget(session.session_id, cost)
            if not check.can_afford:
                raise BudgetExceededError(
                    f"Session budget exceeded: {check.reason}",
                    session_id=session.session_id,
                    requested=cost,
                    remaining=check.remaining,
                )
            method = PaymentMethod.SESSION
        else:
            method = PaymentMethod.DIRECT

        record = TaskRecord(
            requester_id=requester_id,
            service_id=service.service_id,
            budget=budget,
            cost=cost,
            payment_method=method,
            resource=resource_id or service.endpoint_url,
            task=task,
            escrow_session_id=session.session_id if session else None,
        )
        await self._store.save_task(record)

        session_payment = None
        if session is not None:
            try:
                session_payment = await self._sessions.debit(
                    session.session_id,
                    service.owner_address,
                    cost,
                    execution_id=record.task_id,
                )
            except PayTrailError as e:
                record.state = TaskState.FAILED
                record.error = e.message
                await self._store.update_task_state(record.task_id, TaskState.FAILED, error=e.message)
                logger.warning(f"Session debit for task {record.task_id} rejected: {e.code}")
                raise

        logger.info(
            f"Hired {service.service_id} for {requester_id}: task={record.task_id} "
            f"cost={cost} method={method.value}"
        )
        return HireResult(
            task=record,
            service=service,
            payment_method=method,
            cost=cost,
            session_payment=session_payment,
        )
