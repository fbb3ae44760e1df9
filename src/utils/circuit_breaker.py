"""Three-state circuit breaker for calls into unreliable collaborators.

States:
    CLOSED: calls pass through; failures are counted and the breaker opens
        once ``failure_threshold`` is reached. Any success resets the count.
    OPEN: calls fail fast with CircuitBreakerOpenError until
        ``reset_timeout`` seconds have elapsed.
    HALF_OPEN: exactly one probing call is admitted at a time. A failure
        reopens the breaker; ``half_open_success_threshold`` consecutive
        successes close it and zero both counters.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from loguru import logger

from src.utils.errors import CircuitBreakerOpenError, ConfigurationError

T = TypeVar("T")


class BreakerState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Tuning for a single breaker instance."""

    name: str
    failure_threshold: int = 3
    reset_timeout: float = 5.0  # seconds spent OPEN before a probe is allowed
    half_open_success_threshold: int = 1
    call_timeout: float | None = None  # seconds; None disables the per-call timeout

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError(
                f"Breaker '{self.name}': failure_threshold must be >= 1, got {self.failure_threshold}"
            )
        if self.reset_timeout < 0:
            raise ConfigurationError(
                f"Breaker '{self.name}': reset_timeout must be >= 0, got {self.reset_timeout}"
            )
        if self.half_open_success_threshold < 1:
            raise ConfigurationError(
                f"Breaker '{self.name}': half_open_success_threshold must be >= 1, "
                f"got {self.half_open_success_threshold}"
            )
        if self.call_timeout is not None and self.call_timeout <= 0:
            raise ConfigurationError(
                f"Breaker '{self.name}': call_timeout must be > 0, got {self.call_timeout}"
            )


class CircuitBreaker:
    """Async circuit breaker wrapping arbitrary coroutine operations.

    Example:
        breaker = CircuitBreaker(CircuitBreakerConfig(name="persistence"))
        step_id = await breaker.execute(lambda: store.save_step(step, session_id))

    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> BreakerState:
        """Current state, moving OPEN -> HALF_OPEN once the reset timeout has passed."""
        if self._state == BreakerState.OPEN and self._cooldown_remaining() <= 0:
            self._transition(BreakerState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _cooldown_remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.config.reset_timeout - (self._clock() - self._opened_at)

    def _transition(self, new_state: BreakerState) -> None:
        if new_state == self._state:
            return
        logger.info(f"Circuit breaker '{self.name}': {self._state.value} -> {new_state.value}")
        self._state = new_state
        if new_state == BreakerState.OPEN:
            self._opened_at = self._clock()
            self._half_open_successes = 0
        elif new_state == BreakerState.HALF_OPEN:
            self._half_open_successes = 0
        elif new_state == BreakerState.CLOSED:
            self._opened_at = None
            self._failure_count = 0
            self._half_open_successes = 0

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument callable returning an awaitable.

        Returns:
            Whatever the operation returns.

        Raises:
            CircuitBreakerOpenError: If the breaker rejects the call without
                invoking the operation.
            Exception: Any error raised by the operation (after being counted).

        """
        state = self.state
        if state == BreakerState.OPEN:
            raise CircuitBreakerOpenError(self.name, self._cooldown_remaining())

        is_probe = state == BreakerState.HALF_OPEN
        if is_probe:
            if self._probe_in_flight:
                raise CircuitBreakerOpenError(self.name, 0.0)
            self._probe_in_flight = True

        try:
            if self.config.call_timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=self.config.call_timeout)
            else:
                result = await operation()
        except Exception as e:
            self._on_failure(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_probe:
                self._probe_in_flight = False

    def _on_success(self) -> None:
        if self._state == BreakerState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.config.half_open_success_threshold:
                self._transition(BreakerState.CLOSED)
        else:
            self._failure_count = 0

    def _on_failure(self, error: Exception) -> None:
        self._failure_count += 1
        logger.debug(
            f"Circuit breaker '{self.name}' recorded failure "
            f"{self._failure_count}/{self.config.failure_threshold}: {error}"
        )
        if self._state == BreakerState.HALF_OPEN:
            self._transition(BreakerState.OPEN)
        elif self._failure_count >= self.config.failure_threshold:
            logger.warning(
                f"Circuit breaker '{self.name}' opened after {self._failure_count} failures"
            )
            self._transition(BreakerState.OPEN)

    def reset(self) -> None:
        """Force the breaker back to CLOSED with zeroed counters."""
        self._transition(BreakerState.CLOSED)
        self._failure_count = 0
        self._probe_in_flight = False

    def get_stats(self) -> dict[str, Any]:
        """Snapshot for the status tool."""
        state = self.state
        return {
            "name": self.name,
            "state": state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.config.failure_threshold,
            "half_open_successes": self._half_open_successes,
            "retry_after": round(max(self._cooldown_remaining(), 0.0), 3)
            if state == BreakerState.OPEN
            else 0.0,
        }
