"""
Resilience Layer for PayTrail.

Provides retry policies for calls that cross the network.
"""

from .retry import execute_with_retry, is_transient_error, retry_policy

__all__ = [
    "retry_policy",
    "execute_with_retry",
    "is_transient_error",
]
