"""Utility modules for Stepwise MCP."""

from .cache import BoundedCache
from .circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerConfig
from .errors import (
    CircuitBreakerOpenError,
    ConfigurationError,
    CycleError,
    DAGError,
    PersistenceError,
    StepwiseException,
    ToolExecutionError,
    ValidationError,
)
from .retry import retry_with_backoff
from .session import AsyncSessionManager, SessionLocks, SessionNotFoundError

__all__ = [
    "StepwiseException",
    "ValidationError",
    "PersistenceError",
    "DAGError",
    "CycleError",
    "ConfigurationError",
    "CircuitBreakerOpenError",
    "ToolExecutionError",
    "retry_with_backoff",
    "BoundedCache",
    "BreakerState",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "AsyncSessionManager",
    "SessionLocks",
    "SessionNotFoundError",
]
