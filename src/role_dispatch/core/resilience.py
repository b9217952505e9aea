"""
Resilience primitives for dispatch attempts.

Provides timeout budgets, exponential backoff, overall deadlines, and a
cancellation token that every suspension point of a dispatch observes.

Timeout Budget Categories
=========================

    FAST_TIMEOUT (5s)       - Health probes, model listings
    MEDIUM_TIMEOUT (30s)    - Short generations
    SLOW_TIMEOUT (120s)     - Default per-attempt generation budget
    BACKGROUND_TIMEOUT (600s) - Long research-style generations

Example usage:

    from role_dispatch.core.resilience import (
        BackoffPolicy,
        CancellationToken,
        run_cancellable,
    )

    token = CancellationToken()
    result = await run_cancellable(
        lambda: adapter.generate_text(request),
        timeout=SLOW_TIMEOUT,
        token=token,
        operation="openai.generate_text",
    )
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar
import asyncio
import random
import time


# ---------------------------------------------------------------------------
# Timeout Budget Constants
# ---------------------------------------------------------------------------

#: Fast operations: health probes, model listings
FAST_TIMEOUT: float = 5.0

#: Medium operations: short generations
MEDIUM_TIMEOUT: float = 30.0

#: Slow operations: default per-attempt generation budget
SLOW_TIMEOUT: float = 120.0

#: Background operations: long research-style generations
BACKGROUND_TIMEOUT: float = 600.0


T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Timeout / Cancellation Signals
# ---------------------------------------------------------------------------


class TimeoutException(Exception):
    """Operation timed out.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded.
        operation: Name of the operation that timed out.
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.operation = operation


class OperationCancelled(Exception):
    """The cancellation token fired while an operation was suspended."""

    def __init__(self, message: str = "Operation cancelled", operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class CancellationToken:
    """Caller-owned cancellation signal.

    A token can be shared across tasks; ``cancel()`` may be called from any
    coroutine on the same event loop. Cancellation is one-way.

    Example:
        >>> token = CancellationToken()
        >>> task = asyncio.create_task(orchestrator.dispatch("primary", msgs,
        ...     DispatchOptions(cancellation_token=token)))
        >>> token.cancel("user pressed Ctrl-C")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, operation: Optional[str] = None) -> None:
        """Raise OperationCancelled if the token has fired."""
        if self.is_cancelled:
            raise OperationCancelled(self.reason or "Operation cancelled", operation=operation)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff between retries of the same candidate.

    The delay before retry ``n`` (1-based) is
    ``min(base_delay * exponential_base ** (n - 1), max_delay)``, optionally
    scaled by a random factor in [0.5, 1.5) when ``jitter`` is set.

    Attributes:
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay
        exponential_base: Multiplier applied per retry
        jitter: Randomize delays to avoid synchronized retries
    """

    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False

    def delay_for(self, retry_number: int, retry_after: Optional[float] = None) -> float:
        """Return the delay in seconds before retry ``retry_number``.

        Args:
            retry_number: 1 for the first retry, 2 for the second, ...
            retry_after: Backend-requested minimum wait (rate limits)
        """
        exponent = max(retry_number - 1, 0)
        delay = min(self.base_delay * (self.exponential_base**exponent), self.max_delay)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        if retry_after is not None and retry_after > delay:
            delay = min(retry_after, self.max_delay)

        return max(delay, 0.0)


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------


class Deadline:
    """Overall time budget for a dispatch.

    ``seconds=None`` means no deadline. ``effective_timeout`` returns the
    tighter of a per-attempt timeout and the remaining budget.
    """

    def __init__(self, seconds: Optional[float] = None, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds if seconds is not None else None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def effective_timeout(self, per_attempt: Optional[float]) -> Optional[float]:
        remaining = self.remaining()
        if remaining is None:
            return per_attempt
        if per_attempt is None:
            return remaining
        return min(per_attempt, remaining)


# ---------------------------------------------------------------------------
# Cancellable execution
# ---------------------------------------------------------------------------


async def _settle(task: "asyncio.Task[Any]") -> None:
    """Cancel a task and wait for it to finish without re-raising."""
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled():
        # Mark any late exception as retrieved
        task.exception()


async def run_cancellable(
    factory: Callable[[], Awaitable[T]],
    *,
    timeout: Optional[float] = None,
    token: Optional[CancellationToken] = None,
    operation: Optional[str] = None,
) -> T:
    """Await ``factory()`` bounded by a timeout and a cancellation token.

    The token is checked before the call starts. While the call is in
    flight it races the token; whichever settles first wins and the loser
    is cancelled.

    Raises:
        OperationCancelled: The token fired before or during the call.
        TimeoutException: The call did not finish within ``timeout``.
    """
    if token is not None:
        token.raise_if_cancelled(operation)

    task = asyncio.ensure_future(factory())
    waiters = {task}
    cancel_waiter: Optional["asyncio.Task[None]"] = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _settle(task)
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    await _settle(task)

    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCancelled(token.reason or "Operation cancelled", operation=operation)

    raise TimeoutException(
        f"{operation or 'operation'} timed out after {timeout}s",
        timeout_seconds=timeout,
        operation=operation,
    )


async def cancellable_sleep(
    delay: float,
    token: Optional[CancellationToken] = None,
    *,
    sleep: SleepFunc = asyncio.sleep,
) -> None:
    """Sleep for ``delay`` seconds unless the token fires first.

    Raises:
        OperationCancelled: The token fired before the delay elapsed.
    """
    await run_cancellable(lambda: sleep(delay), token=token, operation="backoff")


__all__ = [
    "FAST_TIMEOUT",
    "MEDIUM_TIMEOUT",
    "SLOW_TIMEOUT",
    "BACKGROUND_TIMEOUT",
    "SleepFunc",
    "TimeoutException",
    "OperationCancelled",
    "CancellationToken",
    "BackoffPolicy",
    "Deadline",
    "run_cancellable",
    "cancellable_sleep",
]
