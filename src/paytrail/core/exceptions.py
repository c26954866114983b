"""
Exception hierarchy for PayTrail.

All core exceptions inherit from PayTrailError. Every class carries a stable
``code`` for callers and a ``retryable`` flag that separates transient
infrastructure failures (retry on the next scheduled run) from terminal ones.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class PayTrailError(Exception):
    """
    Base exception for all PayTrail errors.

    Example:
        >>> try:
        ...     await sessions.debit(session_id, agent, amount, execution_id)
        ... except PayTrailError as e:
        ...     print(e.code, e.message)
    """

    code: str = "PAYTRAIL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Caller-visible representation: stable code plus message."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(PayTrailError):
    """
    Configuration is missing or invalid.

    Raised when:
    - No RPC endpoint is configured
    - Intervals or batch sizes are not positive
    - An unknown reputation mode is requested
    """

    code = "CONFIGURATION_ERROR"


class ValidationError(PayTrailError):
    """
    Input validation error.

    Raised when:
    - Amounts are zero or negative
    - Durations are not positive
    - Required identifiers are empty
    """

    code = "VALIDATION_ERROR"


# ───────────────────────────────────────────────────────────────────
# Transient infrastructure
# ───────────────────────────────────────────────────────────────────


class ChainUnavailableError(PayTrailError):
    """
    Every configured RPC endpoint failed for one logical call.

    Callers treat this as retry-later. Indexers let it abort the run before
    the cursor moves.
    """

    code = "CHAIN_UNAVAILABLE"
    retryable = True

    def __init__(
        self,
        message: str,
        method: str,
        attempts: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.method = method
        self.attempts = attempts


class StorageUnavailableError(PayTrailError):
    """The ledger store could not be reached."""

    code = "STORAGE_UNAVAILABLE"
    retryable = True


# ───────────────────────────────────────────────────────────────────
# Indexing
# ───────────────────────────────────────────────────────────────────


class MalformedEventError(PayTrailError):
    """
    An event log could not be decoded or its block could not be resolved.

    Counted and logged per event; never aborts a batch.
    """

    code = "MALFORMED_EVENT"

    def __init__(
        self,
        message: str,
        tx_hash: str | None = None,
        log_index: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.tx_hash = tx_hash
        self.log_index = log_index


# ───────────────────────────────────────────────────────────────────
# Escrow sessions
# ───────────────────────────────────────────────────────────────────


class SessionError(PayTrailError):
    """Base class for escrow session failures."""

    code = "SESSION_ERROR"

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    """No session exists with the given id."""

    code = "SESSION_NOT_FOUND"


class SessionStateError(SessionError):
    """The requested transition is not valid from the session's current state."""

    code = "SESSION_STATE"


class SessionInactiveError(SessionError):
    """Debit attempted on a session that is not active (pending, closed)."""

    code = "SESSION_INACTIVE"


class SessionExpiredError(SessionError):
    """Debit attempted on a session past its expiry. Triggers the refund."""

    code = "SESSION_EXPIRED"


class UnauthorizedAgentError(SessionError):
    """The debiting agent is not on the session's authorized list."""

    code = "AGENT_NOT_AUTHORIZED"

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        agent_address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, session_id, details)
        self.agent_address = agent_address


class BudgetExceededError(SessionError):
    """
    The debit would push released past min(deposited, max_spend).

    Terminal for the call. Not auto-retried.
    """

    code = "BUDGET_EXCEEDED"

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        requested: Decimal | None = None,
        remaining: Decimal | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, session_id, details)
        self.requested = requested
        self.remaining = remaining

    def __str__(self) -> str:
        return f"{self.message} | Requested: {self.requested}, Remaining: {self.remaining}"


# ───────────────────────────────────────────────────────────────────
# Discovery / hiring
# ───────────────────────────────────────────────────────────────────


class ServiceNotFoundError(PayTrailError):
    """The requested service is unknown or inactive."""

    code = "SERVICE_NOT_FOUND"

    def __init__(self, message: str, service_id: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)
        self.service_id = service_id


class QuoteExceedsBudgetError(PayTrailError):
    """The service's quoted price is above the caller's budget."""

    code = "QUOTE_EXCEEDS_BUDGET"

    def __init__(
        self,
        message: str,
        price: Decimal,
        budget: Decimal,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.price = price
        self.budget = budget
