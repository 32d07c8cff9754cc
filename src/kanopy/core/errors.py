"""
Structured error types for the kanopy engine.

Every failure the engine records on a phase or an action is one of the
types below.  Each error carries a category and an explicit retry flag so
that whoever reads an ActionSet status can tell a Blueprint authoring
mistake from a missing binding or a function-level failure.

Manifesto:
    - **Typed Error Hierarchy:** One type per failure class the engine knows
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Error Chaining:** Preserve the original exception as ``cause``
    - **Serializable:** ``to_info()`` produces the ``ErrorInfo`` stored in status

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       KanopyError                                │
        │  (category, retryable, cause)                                    │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ResolutionError     TemplateError      ConfigurationError       │
        │  (RESOLUTION)        (TEMPLATE)         (CONFIG)                 │
        │                                               │                  │
        │                                    DuplicateFunctionError        │
        │                                    FunctionNotFoundError         │
        │                                                                  │
        │  ExecutionError      CancelledError     PersistenceConflict      │
        │  (EXECUTION)         (CANCELLED)        (PERSISTENCE)            │
        │       │                                                          │
        │  TransientExecutionError               ObjectNotFoundError       │
        │  (retryable=True)                      (NOT_FOUND)               │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Set retryable=True for template/resolution/config errors
    ✅ DO: Let the error type's default_retryable handle it

    ❌ DON'T: Swallow the exception a function raised
    ✅ DO: Wrap it with ``classify_error`` so the cause is kept

Tags:
    error-handling, exception-hierarchy, retry-logic, kanopy

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from kanopy.cr.models import ErrorInfo


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    RESOLUTION = "RESOLUTION"  # Missing config map / secret / artifact / object
    TEMPLATE = "TEMPLATE"  # Undefined path, bad syntax, missing required arg
    CONFIG = "CONFIG"  # Unregistered function, rejected arguments
    EXECUTION = "EXECUTION"  # Function reported a failure
    CANCELLED = "CANCELLED"  # Execution context was cancelled
    PERSISTENCE = "PERSISTENCE"  # Lost an optimistic-concurrency race
    NOT_FOUND = "NOT_FOUND"  # Store has no such object
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"  # Uncategorized errors


class KanopyError(Exception):
    """Base exception for all kanopy engine errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def to_info(self) -> ErrorInfo:
        """Convert to the ``ErrorInfo`` record persisted in status."""
        from kanopy.cr.models import ErrorInfo  # noqa: PLC0415

        return ErrorInfo(
            type=self.__class__.__name__,
            message=self.message,
            category=self.category.value,
            retryable=self.retryable,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# BINDING / AUTHORING ERRORS (never retryable)
# =============================================================================


class ResolutionError(KanopyError):
    """A named binding (config map, secret, input artifact, object) is missing."""

    default_category = ErrorCategory.RESOLUTION
    default_retryable = False


class TemplateError(KanopyError):
    """A template referenced an undefined path or produced an invalid value."""

    default_category = ErrorCategory.TEMPLATE
    default_retryable = False


class ConfigurationError(KanopyError):
    """A phase names an unknown function, or the function rejected its args."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class DuplicateFunctionError(ConfigurationError):
    """Two functions were registered under the same name."""

    def __init__(self, name: str):
        self.function_name = name
        super().__init__(f"Function already registered: {name}")


class FunctionNotFoundError(ConfigurationError):
    """A phase references a function that is not in the registry."""

    def __init__(self, name: str, available: list[str] | None = None):
        self.function_name = name
        listing = ", ".join(available) if available else "(none)"
        super().__init__(f"Function '{name}' is not registered. Available: {listing}")


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(KanopyError):
    """A function's ``execute`` failed.

    ``output`` carries whatever partial output the function produced before
    failing; the phase runner keeps it on the failed phase.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        output: dict[str, str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.output = dict(output or {})


class TransientExecutionError(ExecutionError):
    """Function failure that may succeed if the whole action is re-submitted."""

    default_retryable = True


class CancelledError(KanopyError):
    """The execution context was cancelled before or during a phase."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


# =============================================================================
# STORE ERRORS
# =============================================================================


class PersistenceConflict(KanopyError):
    """A write supplied a stale resource version.

    Raised by the store for a single lost race, and by the status updater
    once its retry budget is exhausted (``attempts`` is set then).
    """

    default_category = ErrorCategory.PERSISTENCE
    default_retryable = True

    def __init__(self, message: str, *, attempts: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class ObjectNotFoundError(KanopyError):
    """The store holds no object under the given reference."""

    default_category = ErrorCategory.NOT_FOUND
    default_retryable = False

    def __init__(self, ref: Any):
        self.ref = ref
        super().__init__(f"Object not found: {ref}")


class InvalidTransitionError(KanopyError, ValueError):
    """Raised when an illegal state transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "State") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def classify_error(error: BaseException) -> KanopyError:
    """Normalise an exception raised by a function into a ``KanopyError``.

    Engine errors pass through untouched.  Anything else becomes a
    non-retryable ``ExecutionError`` of category UNKNOWN with the original
    exception chained as cause.
    """
    if isinstance(error, KanopyError):
        return error
    return ExecutionError(
        f"{type(error).__name__}: {error}",
        category=ErrorCategory.UNKNOWN,
        retryable=False,
        cause=error if isinstance(error, Exception) else None,
    )


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, KanopyError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "KanopyError",
    "ResolutionError",
    "TemplateError",
    "ConfigurationError",
    "DuplicateFunctionError",
    "FunctionNotFoundError",
    "ExecutionError",
    "TransientExecutionError",
    "CancelledError",
    "PersistenceConflict",
    "ObjectNotFoundError",
    "InvalidTransitionError",
    "classify_error",
    "is_retryable",
]
