"""
Resilience Patterns

Concurrency limit, retry and timeout helpers for the registry's background work.
"""

from registry_core.resilience.patterns import (
    Bulkhead,
    RetryExhausted,
    RetryPolicy,
    with_timeout
)

__all__ = [
    "Bulkhead",
    "RetryExhausted",
    "RetryPolicy",
    "with_timeout"
]
