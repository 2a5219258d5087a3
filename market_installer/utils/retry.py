"""
Bounded exponential backoff for fallible, transient-prone steps, with
cooperative cancellation.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from market_installer.exceptions import JobCancelledError

log = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """
    A cooperative cancellation flag checked at every suspension point.

    Setting the flag never interrupts running code; it wakes any pending
    ``sleep()`` and makes the next ``raise_if_cancelled()`` raise.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise JobCancelledError(f"Cancelled{f' before {where}' if where else ''}.")

    async def wait(self, timeout: float) -> bool:
        """Waits up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def sleep(self, delay: float) -> None:
        """Sleeps for ``delay`` seconds unless cancelled first."""
        if await self.wait(delay):
            raise JobCancelledError("Cancelled during backoff.")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to back off in between."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_before_retry(self, retry_number: int) -> float:
        """Delay before retry ``n`` (n >= 1): base * 2^(n-1), capped."""
        return min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )


def is_marked_retryable(exc: BaseException) -> bool:
    """Default predicate: only errors that declare themselves retryable."""
    return bool(getattr(exc, "retryable", False))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = is_marked_retryable,
    cancel_token: CancelToken | None = None,
    description: str = "operation",
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """
    Runs ``operation`` up to ``policy.max_attempts`` times.

    Non-retryable errors propagate at once. After the final failed attempt the
    last error propagates unchanged. A cancelled token raises
    ``JobCancelledError`` before the next attempt and cuts a pending backoff
    short.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt.
        policy: Attempt count and backoff schedule.
        is_retryable: Decides whether a failure is transient.
        cancel_token: Cooperative cancellation flag of the owning job.
        description: Used in log lines.
        on_retry: Called with (failed_attempt, delay, error) before each backoff.
    """
    last_exception: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        if cancel_token:
            cancel_token.raise_if_cancelled(description)
        try:
            return await operation()
        except JobCancelledError:
            raise
        except Exception as e:
            if not is_retryable(e):
                raise
            last_exception = e
            if attempt >= policy.max_attempts:
                break
            delay = policy.delay_before_retry(attempt)
            log.debug(
                f"{description} attempt {attempt}/{policy.max_attempts} failed: {e}."
                f" Retrying in {delay:.2f}s..."
            )
            if on_retry:
                on_retry(attempt, delay, e)
            if cancel_token:
                await cancel_token.sleep(delay)
            else:
                await asyncio.sleep(delay)

    log.warning(
        f"{description} failed after {policy.max_attempts} attempts: {last_exception}"
    )
    raise last_exception
