"""
Retry Controller
════════════════

Runs one async operation up to `max_attempts` times.

  attempt 1 ── fail ── sleep base**1 ── attempt 2 ── fail ── sleep base**2 ── attempt 3 ── fail ──▶ raise last error
      │                                     │                                     │
      └── ok ──▶ return                     └── ok ──▶ return                     └── ok ──▶ return

With the defaults (3 attempts, base 2.0) a permanently failing operation
costs 2s + 4s of waiting. Each attempt may be bounded by `timeout`; a
timed-out attempt counts as an ordinary failure.

Every Exception is treated as retryable, including ones that will never
succeed (bad credentials, a 404 URL). Cancellation is not an Exception and
always propagates immediately.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, TypeVar

from book_pipeline.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 2.0
    timeout:      float | None = None   # per attempt, seconds
    sleep:        Sleep = field(default=asyncio.sleep, compare=False, repr=False)

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt `attempt` (1-based)."""
        return self.backoff_base ** attempt

    def with_timeout(self, timeout: float | None) -> "RetryPolicy":
        return replace(self, timeout=timeout)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_base=settings.retry_backoff_base,
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy:    RetryPolicy | None = None,
    label:     str = "operation",
) -> T:
    """
    Await `operation()` until it succeeds or the attempt budget is spent.

    Raises the exception from the final attempt unchanged.
    """
    policy = policy or RetryPolicy()
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError) and not str(exc):
                exc = asyncio.TimeoutError(f"{label} timed out after {policy.timeout:.0f}s")
            last_error = exc
            logger.warning(
                "Attempt failed | op=%s attempt=%d/%d error=%s: %s",
                label, attempt, policy.max_attempts, type(exc).__name__, exc,
            )

        if attempt < policy.max_attempts:
            await policy.sleep(policy.delay_after(attempt))

    logger.error(
        "Retries exhausted | op=%s attempts=%d error=%s",
        label, policy.max_attempts, last_error,
    )
    raise last_error or RuntimeError(f"{label} was never attempted (max_attempts={policy.max_attempts})")
