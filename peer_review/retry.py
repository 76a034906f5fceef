"""Bounded exponential-backoff retry around a single fallible async call."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_sec: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before re-attempting after failed attempt `attempt` (0-based): 1s, 2s, 4s ..."""
        return self.base_delay_sec * (2 ** attempt)


DEFAULT_RETRY = RetryPolicy()


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY,
    label: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `operation()` up to `policy.max_attempts` times.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per attempt.
        policy: Attempt cap and backoff base.
        label: Short name of the call, used in log lines only.
        sleep: Backoff coroutine; tests pass a no-op.

    Returns:
        The first successful result.

    Raises:
        The exception from the final attempt, unchanged. Cancellation is never
        retried.
    """
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt == policy.max_attempts - 1:
                logger.warning(
                    "%s failed after %d attempts: %s", label, policy.max_attempts, exc
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt + 1, policy.max_attempts, delay, exc,
            )
            await sleep(delay)

    raise AssertionError("unreachable")
