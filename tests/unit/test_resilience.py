"""
Tests for resilience primitives: backoff, deadlines, cancellation and
bounded execution.
"""

import asyncio

import pytest

from role_dispatch.core.resilience import (
    BackoffPolicy,
    CancellationToken,
    Deadline,
    OperationCancelled,
    TimeoutException,
    cancellable_sleep,
    run_cancellable,
)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# =============================================================================
# BackoffPolicy
# =============================================================================


class TestBackoffPolicy:
    """Tests for exponential backoff delays."""

    def test_exponential_growth(self):
        """Delays double per retry from the base delay."""
        policy = BackoffPolicy(base_delay=1.0, exponential_base=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """No delay exceeds max_delay."""
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.delay_for(10) == 5.0

    def test_retry_after_raises_floor(self):
        """A larger backend retry_after wins over the computed delay."""
        policy = BackoffPolicy(base_delay=1.0, max_delay=30.0)
        assert policy.delay_for(1, retry_after=7.5) == 7.5

    def test_retry_after_still_capped(self):
        """retry_after is bounded by max_delay."""
        policy = BackoffPolicy(base_delay=1.0, max_delay=10.0)
        assert policy.delay_for(1, retry_after=120.0) == 10.0

    def test_jitter_stays_in_range(self):
        """Jittered delays fall within [0.5x, 1.5x) of the base delay."""
        policy = BackoffPolicy(base_delay=2.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= policy.delay_for(1) < 3.0


# =============================================================================
# Deadline
# =============================================================================


class TestDeadline:
    """Tests for the overall dispatch deadline."""

    def test_no_deadline(self):
        """seconds=None never expires and passes per-attempt timeouts through."""
        deadline = Deadline(None)
        assert deadline.remaining() is None
        assert deadline.expired is False
        assert deadline.effective_timeout(30.0) == 30.0

    def test_remaining_counts_down(self):
        """remaining() tracks the injected clock."""
        clock = FakeClock()
        deadline = Deadline(10.0, clock=clock)
        clock.now += 4.0
        assert deadline.remaining() == pytest.approx(6.0)
        clock.now += 10.0
        assert deadline.remaining() == 0.0
        assert deadline.expired is True

    def test_effective_timeout_is_tighter_bound(self):
        """The smaller of per-attempt timeout and remaining budget wins."""
        clock = FakeClock()
        deadline = Deadline(10.0, clock=clock)
        assert deadline.effective_timeout(30.0) == pytest.approx(10.0)
        assert deadline.effective_timeout(3.0) == 3.0
        assert deadline.effective_timeout(None) == pytest.approx(10.0)


# =============================================================================
# CancellationToken / run_cancellable
# =============================================================================


class TestCancellationToken:
    """Tests for the caller-owned cancellation signal."""

    def test_cancel_is_one_way(self):
        """The first reason is kept."""
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.is_cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled(self):
        """raise_if_cancelled raises only after cancel()."""
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(OperationCancelled, match="stop"):
            token.raise_if_cancelled("op")


class TestRunCancellable:
    """Tests for bounded, cancellable awaiting."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        """A call that finishes in time returns its value."""

        async def work():
            return 42

        assert await run_cancellable(work, timeout=1.0, token=CancellationToken()) == 42

    @pytest.mark.asyncio
    async def test_timeout_cancels_call(self):
        """A slow call raises TimeoutException and is cancelled."""
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(TimeoutException) as exc_info:
            await run_cancellable(slow, timeout=0.01, operation="slow")
        assert exc_info.value.timeout_seconds == 0.01
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_already_cancelled_token_skips_call(self):
        """The call is never started when the token already fired."""
        token = CancellationToken()
        token.cancel()
        started = False

        async def work():
            nonlocal started
            started = True

        with pytest.raises(OperationCancelled):
            await run_cancellable(work, token=token)
        assert started is False

    @pytest.mark.asyncio
    async def test_cancel_during_call(self):
        """Cancelling mid-flight abandons the call."""
        token = CancellationToken()

        async def slow():
            await asyncio.sleep(10)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("user abort")

        canceller = asyncio.ensure_future(cancel_soon())
        with pytest.raises(OperationCancelled, match="user abort"):
            await run_cancellable(slow, timeout=5.0, token=token)
        await canceller

    @pytest.mark.asyncio
    async def test_exceptions_propagate(self):
        """Errors from the call propagate unchanged."""

        async def broken():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            await run_cancellable(broken, timeout=1.0)


class TestCancellableSleep:
    """Tests for backoff sleeps that observe cancellation."""

    @pytest.mark.asyncio
    async def test_uses_injected_sleep(self):
        """The injected sleep receives the delay."""
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        await cancellable_sleep(2.5, CancellationToken(), sleep=fake_sleep)
        assert delays == [2.5]

    @pytest.mark.asyncio
    async def test_cancelled_during_sleep(self):
        """A token fired during backoff interrupts the sleep."""
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(OperationCancelled):
            await cancellable_sleep(10.0, token)
