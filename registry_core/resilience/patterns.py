"""
Resilience Patterns

Concurrency limit, retry and timeout helpers used by the discovery and
health loops.
"""

from typing import Callable, Any, Optional, Tuple, Type
import asyncio
import random
import structlog

from registry_core.exceptions import OperationTimeout

logger = structlog.get_logger("resilience")


# ============================================================================
# Bulkhead Pattern
# ============================================================================

class Bulkhead:
    """
    Caps how many operations of one kind run at the same time.

    Callers beyond ``max_concurrent`` wait for a slot; nobody is turned
    away, so every submitted pass eventually runs.

    Usage:
        bulkhead = Bulkhead("health", max_concurrent=10)
        applied = await bulkhead.execute(monitor.check_service, descriptor)
    """

    def __init__(self, name: str, max_concurrent: int = 10):
        if max_concurrent < 1:
            raise ValueError(f"Bulkhead {name} needs at least one slot, got {max_concurrent}")
        self.name = name
        self.max_concurrent = max_concurrent
        self._slots = asyncio.Semaphore(max_concurrent)

        self.total_calls = 0
        self.waiting = 0
        self.active = 0
        self.peak_active = 0

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` once a slot is free"""
        self.total_calls += 1
        self.waiting += 1
        try:
            await self._slots.acquire()
        finally:
            self.waiting -= 1

        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            return await func(*args, **kwargs)
        finally:
            self.active -= 1
            self._slots.release()

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "max_concurrent": self.max_concurrent,
            "total_calls": self.total_calls,
            "active": self.active,
            "peak_active": self.peak_active,
            "waiting": self.waiting
        }


# ============================================================================
# Retry Pattern
# ============================================================================

class RetryExhausted(Exception):
    """Raised when all retry attempts exhausted"""
    pass


class RetryPolicy:
    """
    Retry with exponential backoff and jitter.

    Only exceptions listed in ``retry_on`` trigger another attempt; anything
    else propagates unchanged from the first failing call.

    Usage:
        policy = RetryPolicy(max_attempts=3, base_delay=0.5, retry_on=(OSError,))
        addresses = await policy.execute(resolver.resolve, "billing.internal")
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_on = retry_on

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (±25% jitter)"""
        delay = min(self.base_delay * self.exponential_base ** attempt, self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.75, 1.25)
        return max(0.0, delay)

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """
        Call ``func`` until it succeeds or attempts run out.

        Raises:
            RetryExhausted: Every attempt failed with a retryable error;
                the last one is chained as ``__cause__``
        """
        name = getattr(func, "__name__", repr(func))
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                last_error = e
                if attempt + 1 == self.max_attempts:
                    break
                delay = self.backoff(attempt)
                logger.warning(
                    "Attempt failed, retrying",
                    operation=name,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)

        logger.error("Retry attempts exhausted", operation=name, attempts=self.max_attempts)
        raise RetryExhausted(
            f"Failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error


# ============================================================================
# Timeout Pattern
# ============================================================================

async def with_timeout(
    func: Callable,
    timeout_seconds: Optional[float],
    *args,
    **kwargs
) -> Any:
    """
    Execute function with timeout

    ``timeout_seconds=None`` waits indefinitely.

    Usage:
        healthy = await with_timeout(predicate, 5.0, instance)
    """
    try:
        return await asyncio.wait_for(
            func(*args, **kwargs),
            timeout=timeout_seconds
        )
    except asyncio.TimeoutError:
        raise OperationTimeout(
            f"Operation timed out after {timeout_seconds}s",
            timeout=timeout_seconds
        )
