"""
Retry Strategies using Tenacity.

Standard retry policy for idempotent calls. Transfers are never routed
through it: a timeout there can hide a broadcast.
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from paytrail.core.exceptions import PayTrailError
from paytrail.core.logging import get_logger

logger = get_logger("resilience.retry")

DEFAULT_ATTEMPTS = 3
DEFAULT_MAX_WAIT = 8.0


def is_transient_error(exception: BaseException) -> bool:
    """Check if exception is a transient network/infrastructure error."""
    if isinstance(exception, PayTrailError):
        return exception.retryable
    if isinstance(exception, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code >= 500 or exception.response.status_code == 429

    # Heuristic for SDK errors that only surface a message
    msg = str(exception).lower()
    return any(
        x in msg
        for x in [
            "timeout",
            "connection refused",
            "502",
            "503",
            "504",
            "network error",
            "rate limit",
        ]
    )


def _log_before_sleep(retry_state: Any) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"Retrying after transient error (attempt {retry_state.attempt_number}): {exc}")


def retry_policy(
    attempts: int = DEFAULT_ATTEMPTS,
    max_wait: float = DEFAULT_MAX_WAIT,
) -> AsyncRetrying:
    """
    Build the standard async retry policy.

    Retries only transient errors with exponential backoff (1s, 2s, 4s...,
    capped at ``max_wait``) and re-raises the last error once exhausted.
    """
    return AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        wait=wait_exponential(multiplier=1, min=1, max=max_wait),
        stop=stop_after_attempt(attempts),
        reraise=True,
        before_sleep=_log_before_sleep,
    )


async def execute_with_retry(
    func: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Execute an async function with standard retry policy."""
    async for attempt in retry_policy():
        with attempt:
            return await func(*args, **kwargs)
