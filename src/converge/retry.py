"""
Retry Policy - Exponential backoff with jitter for remote calls.

A single policy is shared by every collaborator. It consumes the error
classification made by the collaborator: RetryableError and timeouts are
retried, NotFoundError only while waiting for eventual consistency, and
everything else propagates immediately.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from converge.errors import NotFoundError, RetryableError, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BackoffPolicy:
    """Exponential backoff settings."""

    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter_factor: float = 0.1  # ±10% jitter
    max_attempts: int = 5
    budget: Optional[float] = 600.0  # total seconds across attempts, None = unbounded

    def delay(self, attempt: int) -> float:
        """
        Delay before retrying after the given (0-based) failed attempt.

        The exponent is capped at 10, the result at ``max_delay``, then
        jitter of ±``jitter_factor`` is applied.
        """
        base = min(self.base_delay * (2 ** min(attempt, 10)), self.max_delay)
        jitter = 1 + (random.random() * 2 - 1) * self.jitter_factor
        return max(0.0, base * jitter)

    @classmethod
    def from_config(cls, config: Any) -> "BackoffPolicy":
        """Build from an ExecutorConfig."""
        return cls(
            base_delay=config.backoff_base_delay,
            max_delay=config.backoff_max_delay,
            jitter_factor=config.backoff_jitter_factor,
            max_attempts=config.max_attempts,
            budget=config.retry_budget,
        )


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    timeout: Optional[float] = None,
    description: str = "remote call",
    retry_on_not_found: bool = False,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or the policy gives up.

    Args:
        fn: Zero-argument coroutine factory, called once per attempt
        policy: Backoff settings
        timeout: Per-attempt timeout in seconds; an expired attempt is retried
        description: Used in log messages and the final error
        retry_on_not_found: Treat NotFoundError as retryable
        sleep: Sleep function (replaceable in tests)

    Returns:
        The result of the first successful attempt

    Raises:
        RetryExhausted: If attempts or the time budget run out
        NotFoundError: If ``retry_on_not_found`` is False and the object is missing
        Exception: Any non-retryable error raised by ``fn``
    """
    started = time.monotonic()
    last_error: Optional[Exception] = None
    max_attempts = max(1, policy.max_attempts)

    for attempt in range(max_attempts):
        try:
            if timeout is not None:
                return await asyncio.wait_for(fn(), timeout=timeout)
            return await fn()
        except asyncio.TimeoutError:
            last_error = RetryableError(f"{description} timed out after {timeout}s")
        except RetryableError as e:
            last_error = e
        except NotFoundError as e:
            if not retry_on_not_found:
                raise
            last_error = e

        if attempt + 1 >= max_attempts:
            break
        delay = policy.delay(attempt)
        if policy.budget is not None and time.monotonic() - started + delay > policy.budget:
            logger.warning(f"{description}: retry budget of {policy.budget}s exhausted")
            break
        logger.info(
            f"{description} failed (attempt {attempt + 1}/{max_attempts}): "
            f"{last_error}; retrying in {delay:.2f}s"
        )
        await sleep(delay)

    raise RetryExhausted(
        f"{description} failed after {attempt + 1} attempt(s): {last_error}",
        attempts=attempt + 1,
        last_error=last_error,
    )
