"""Custom exceptions and error classification for Stepwise MCP."""

from __future__ import annotations

import traceback
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError


class StepwiseException(Exception):
    """Base exception for Stepwise MCP."""

    pass


class ValidationError(StepwiseException):
    """Raised when a submitted step is malformed."""

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        self.issues = issues or []
        super().__init__(message)


class PersistenceError(StepwiseException):
    """Raised when the step store cannot save or load steps."""

    pass


class DAGError(StepwiseException):
    """Raised when the dependency graph cannot be updated or queried."""

    pass


class CycleError(DAGError):
    """Raised when level resolution revisits a step that is still resolving."""

    def __init__(self, step_number: int) -> None:
        self.step_number = step_number
        super().__init__(f"Cycle detected in dependency graph at step {step_number}")


class ConfigurationError(StepwiseException):
    """Raised when configuration values are invalid. Fatal at startup."""

    pass


class CircuitBreakerOpenError(StepwiseException):
    """Raised when a call is rejected because the breaker is open."""

    def __init__(self, name: str, retry_after: float = 0.0) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is open; retry in {max(retry_after, 0.0):.2f}s"
        )


class ExternalServiceError(StepwiseException):
    """Raised when a collaborator outside the process misbehaves."""

    pass


class ErrorCategory(str, Enum):
    """Coarse error classes used for logging and caller-facing payloads."""

    VALIDATION = "validation"
    PERSISTENCE = "persistence"
    DAG = "dag"
    CONFIGURATION = "configuration"
    CIRCUIT_OPEN = "circuit_open"
    EXTERNAL_SERVICE = "external_service"
    UNKNOWN = "unknown"


_TYPED_CATEGORIES: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (CircuitBreakerOpenError, ErrorCategory.CIRCUIT_OPEN),
    (DAGError, ErrorCategory.DAG),
    (ValidationError, ErrorCategory.VALIDATION),
    (PydanticValidationError, ErrorCategory.VALIDATION),
    (PersistenceError, ErrorCategory.PERSISTENCE),
    (ConfigurationError, ErrorCategory.CONFIGURATION),
    (ExternalServiceError, ErrorCategory.EXTERNAL_SERVICE),
)

# Checked in order; first hit wins
_MESSAGE_CATEGORIES: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (("validation", "invalid"), ErrorCategory.VALIDATION),
    (("sqlite", "database", "persist"), ErrorCategory.PERSISTENCE),
    (("cycle", "dag", "dependency"), ErrorCategory.DAG),
    (("config",), ErrorCategory.CONFIGURATION),
    (("timeout", "timed out", "network", "econnrefused", "503", "rate limit"),
     ErrorCategory.EXTERNAL_SERVICE),
)

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "econnrefused",
    "rate limit",
    "429",
    "503",
    "temporary",
    "locked",
    "busy",
)


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an exception into an ErrorCategory.

    Breaker-open and graph errors are matched by type, never by message, so
    a cycle error whose text mentions a database is still a DAG error.

    Args:
        error: The exception to classify.

    Returns:
        The matching category, or UNKNOWN.

    """
    for exc_type, category in _TYPED_CATEGORIES:
        if isinstance(error, exc_type):
            return category

    message = str(error).lower()
    for markers, category in _MESSAGE_CATEGORIES:
        if any(marker in message for marker in markers):
            return category

    return ErrorCategory.UNKNOWN


def is_retryable_error(error: BaseException) -> bool:
    """Return True for transient failures worth retrying (timeouts, locks, 503s)."""
    if isinstance(error, CircuitBreakerOpenError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


@dataclass
class ErrorContext:
    """Structured description of a failure, safe to log or return to a caller."""

    operation: str
    error: str
    error_type: str
    category: ErrorCategory
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    step_number: int | None = None
    branch_id: str | None = None
    stack_trace: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["category"] = self.category.value
        return data


def create_error_context(
    operation: str,
    error: BaseException,
    *,
    step_number: int | None = None,
    branch_id: str | None = None,
    include_trace: bool = False,
) -> ErrorContext:
    """Wrap an exception with operation and step context."""
    stack_trace = None
    if include_trace:
        stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        # Keep the payload bounded
        if len(stack_trace) > 10_000:
            stack_trace = stack_trace[-10_000:]

    return ErrorContext(
        operation=operation,
        error=str(error),
        error_type=type(error).__name__,
        category=classify_error(error),
        step_number=step_number,
        branch_id=branch_id,
        stack_trace=stack_trace,
    )


class ToolExecutionError(Exception):
    """Raised when tool execution fails in MCP context.

    Provides structured error information that can be returned
    to the LLM client in a parseable format.
    """

    def __init__(
        self,
        tool_name: str,
        error_message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize tool execution error.

        Args:
            tool_name: Name of the tool that failed.
            error_message: Human-readable error message.
            details: Optional dictionary with additional error details.

        """
        self.tool_name = tool_name
        self.error_message = error_message
        self.details = details or {}
        super().__init__(f"Tool {tool_name} failed: {error_message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": True,
            "tool": self.tool_name,
            "message": self.error_message,
            "details": self.details,
        }
