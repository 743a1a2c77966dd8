"""
Retry-with-backoff shared by every network-facing stage.

Each stage supplies its own policy (attempt budget, backoff, optional
pause before every attempt) and decides which errors are worth another
attempt. The final error is re-raised unchanged; wrapping it into a
typed stage error is the caller's job.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger


T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
AttemptHook = Callable[[int, BaseException | None], None]


def linear_backoff(step: float) -> Callable[[int], float]:
    """
    Delay grows with the attempt index: ``attempt * step``.

    Examples:
        >>> linear_backoff(2.0)(2)
        4.0

    """
    return lambda attempt: attempt * step


def constant_backoff(delay: float) -> Callable[[int], float]:
    """
    Same delay before every retry.

    Examples:
        >>> constant_backoff(2.0)(5)
        2.0

    """
    return lambda _attempt: delay


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and waits for one stage."""

    max_attempts: int
    backoff: Callable[[int], float] = field(default=linear_backoff(1.0))
    pre_attempt_delay: float = 0.0

    def delay_before(self, attempt: int) -> float:
        """Total wait before ``attempt`` (0-based)."""
        delay = self.backoff(attempt) if attempt > 0 else 0.0
        return delay + self.pre_attempt_delay


# Stage policies
RENDITION_POLICY = RetryPolicy(max_attempts=3, backoff=linear_backoff(2.0))
INFERENCE_POLICY = RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0))
COMMIT_POLICY = RetryPolicy(max_attempts=3, backoff=constant_backoff(2.0), pre_attempt_delay=1.0)


def _always(_exc: BaseException) -> bool:
    return True


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = _always,
    sleep: Sleep = asyncio.sleep,
    on_attempt: AttemptHook | None = None,
    label: str = "operation",
) -> T:
    """
    Run ``operation(attempt)`` until it returns or the budget is spent.

    Args:
        operation: Coroutine factory receiving the 0-based attempt index
        policy: Attempt budget and backoff for this stage
        is_retryable: Errors for which this returns False propagate at once
        sleep: Awaitable sleep, injectable for tests
        on_attempt: Called after each attempt with the error (or None on success)
        label: Name used in log events

    Returns:
        The value returned by the first successful attempt.

    Raises:
        The error of the last attempt, or the first non-retryable error.

    """
    if policy.max_attempts < 1:
        msg = "max_attempts must be at least 1"
        raise ValueError(msg)

    for attempt in range(policy.max_attempts):
        if attempt > 0:
            backoff = policy.backoff(attempt)
            logger.debug("retry_backoff", label=label, attempt=attempt + 1, seconds=backoff)
            if backoff > 0:
                await sleep(backoff)
        if policy.pre_attempt_delay > 0:
            await sleep(policy.pre_attempt_delay)

        try:
            result = await operation(attempt)
        except Exception as exc:
            if on_attempt is not None:
                on_attempt(attempt, exc)
            final = attempt == policy.max_attempts - 1
            if final or not is_retryable(exc):
                logger.debug(
                    "retry_giving_up",
                    label=label,
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    error=str(exc),
                )
                raise
            logger.warning(
                "retry_attempt_failed",
                label=label,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                error=str(exc),
            )
        else:
            if on_attempt is not None:
                on_attempt(attempt, None)
            return result

    # Unreachable: the loop either returns or raises.
    msg = "retry loop exited without a result"
    raise RuntimeError(msg)
