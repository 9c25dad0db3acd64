from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from kubedeploy.config import Settings
from kubedeploy.exceptions import DescriptorValidationError, RetryExhaustedError, RouteConflictError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Errors that another attempt cannot fix
NON_RETRYABLE = (DescriptorValidationError, RouteConflictError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off for one remote mutation."""

    max_retries: int = 5
    backoff_factor: float = 3.0
    min_delay: float = 0.5
    max_delay: float = 5.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            backoff_factor=settings.retry_backoff_factor,
            min_delay=settings.retry_min_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def delay(self, attempt: int) -> float:
        """Back-off before retrying after failed attempt ``attempt`` (0-based), without jitter."""
        return min(self.max_delay, self.min_delay * self.backoff_factor**attempt)

    def wait(self):
        base = wait_exponential(
            multiplier=self.min_delay,
            exp_base=self.backoff_factor,
            min=0,
            max=self.max_delay,
        )
        if self.jitter and self.min_delay > 0:
            return base + wait_random(0, self.min_delay)
        return base


def _log_failed_attempt(description: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "retry.attempt_failed",
            description=description,
            attempt=state.attempt_number,
            delay=round(state.next_action.sleep, 3) if state.next_action else None,
            error=str(exc),
        )

    return _log


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    Validation and route-conflict errors propagate at once. Any other error
    is retried; after the last attempt a ``RetryExhaustedError`` is raised
    whose message is ``description`` prefixed to the last error.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=policy.wait(),
        retry=retry_if_not_exception_type(NON_RETRYABLE),
        before_sleep=_log_failed_attempt(description),
        sleep=sleep,
        reraise=False,
    )
    # tenacity only awaits coroutine functions, and callers may pass a plain
    # callable returning an awaitable
    async def _attempt() -> T:
        return await operation()

    try:
        return await retrying(_attempt)
    except RetryError as exc:
        last = exc.last_attempt.exception()
        attempts = exc.last_attempt.attempt_number
        logger.error("retry.exhausted", description=description, attempts=attempts, error=str(last))
        raise RetryExhaustedError(f"{description}: {last}", attempts=attempts) from last
