"""Unit tests for src/utils/circuit_breaker.py."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import pytest

from src.utils.circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerConfig
from src.utils.errors import CircuitBreakerOpenError, ConfigurationError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Operation:
    """Awaitable factory that fails on demand and counts invocations."""

    def __init__(self) -> None:
        self.calls = 0
        self.fail = False

    def __call__(self) -> Coroutine[Any, Any, str]:
        async def run() -> str:
            self.calls += 1
            if self.fail:
                raise RuntimeError("collaborator down")
            return "ok"

        return run()


def make_breaker(
    clock: FakeClock, failure_threshold: int = 3, half_open: int = 1, reset_timeout: float = 5.0
) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        name="test",
        failure_threshold=failure_threshold,
        reset_timeout=reset_timeout,
        half_open_success_threshold=half_open,
    )
    return CircuitBreaker(config, clock=clock)


class TestCircuitBreakerConfig:
    """Test config validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_threshold": 0},
            {"reset_timeout": -1.0},
            {"half_open_success_threshold": 0},
            {"call_timeout": 0.0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs: dict[str, float]) -> None:
        """Out-of-range values raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(name="bad", **kwargs)  # type: ignore[arg-type]


class TestCircuitBreakerClosed:
    """Test the closed state."""

    @pytest.mark.asyncio
    async def test_passes_results_through(self) -> None:
        """A healthy operation's result is returned."""
        breaker = make_breaker(FakeClock())
        assert await breaker.execute(Operation()) == "ok"
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        """Any success while closed zeroes the counter."""
        breaker = make_breaker(FakeClock())
        op = Operation()
        op.fail = True
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(op)
        assert breaker.failure_count == 2

        op.fail = False
        await breaker.execute(op)
        assert breaker.failure_count == 0
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self) -> None:
        """The breaker opens once failures reach the threshold."""
        breaker = make_breaker(FakeClock(), failure_threshold=2)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        assert breaker.state == BreakerState.CLOSED
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        assert breaker.state == BreakerState.OPEN


class TestCircuitBreakerOpen:
    """Test fail-fast behaviour and recovery."""

    @pytest.mark.asyncio
    async def test_single_failure_opens_and_fails_fast(self) -> None:
        """With threshold 1 the next call is rejected without running the operation."""
        breaker = make_breaker(FakeClock(), failure_threshold=1)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        assert op.calls == 1

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(op)
        assert op.calls == 1
        assert exc_info.value.name == "test"
        assert exc_info.value.retry_after == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_half_open_after_timeout(self) -> None:
        """After the reset timeout one probe runs and success closes the breaker."""
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)

        clock.advance(5.0)
        assert breaker.state == BreakerState.HALF_OPEN

        op.fail = False
        assert await breaker.execute(op) == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self) -> None:
        """A failed probe sends the breaker back to open."""
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        clock.advance(6.0)
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        assert breaker.state == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_needs_consecutive_half_open_successes(self) -> None:
        """With a threshold of 2 the breaker stays half-open after one probe."""
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1, half_open=2)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        clock.advance(5.0)

        op.fail = False
        await breaker.execute(op)
        assert breaker.state == BreakerState.HALF_OPEN
        await breaker.execute(op)
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_only_one_probe_in_flight(self) -> None:
        """A second call while the probe runs is rejected."""
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1)
        failing = Operation()
        failing.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(failing)
        clock.advance(5.0)

        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.execute(slow))
        await asyncio.sleep(0)
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.execute(Operation())
        release.set()
        assert await probe == "probe"
        assert breaker.state == BreakerState.CLOSED


class TestCircuitBreakerMisc:
    """Test timeouts, reset and stats."""

    @pytest.mark.asyncio
    async def test_call_timeout_counts_as_failure(self) -> None:
        """A call exceeding call_timeout fails and is counted."""
        config = CircuitBreakerConfig(name="slow", failure_threshold=1, call_timeout=0.01)
        breaker = CircuitBreaker(config)

        async def hang() -> None:
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await breaker.execute(hang)
        assert breaker.state == BreakerState.OPEN

    @pytest.mark.asyncio
    async def test_reset(self) -> None:
        """reset() closes the breaker and zeroes counters."""
        breaker = make_breaker(FakeClock(), failure_threshold=1)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        breaker.reset()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_stats(self) -> None:
        """get_stats reports state and remaining cooldown."""
        clock = FakeClock()
        breaker = make_breaker(clock, failure_threshold=1)
        op = Operation()
        op.fail = True
        with pytest.raises(RuntimeError):
            await breaker.execute(op)
        clock.advance(2.0)
        stats = breaker.get_stats()
        assert stats["name"] == "test"
        assert stats["state"] == "open"
        assert stats["failure_count"] == 1
        assert stats["retry_after"] == pytest.approx(3.0)
