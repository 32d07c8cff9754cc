"""Kanopy Core -- errors, logging, settings, retry and execution context.

Architecture::

    errors.py      Typed error hierarchy (KanopyError and subclasses)
    logging.py     structlog configuration and LogContext
    settings.py    EngineSettings (pydantic-settings, KANOPY_ prefix)
    retry.py       Backoff strategies for status writes and redelivery
    context.py     Cancellable ExecutionContext handed to functions
"""

from kanopy.core.context import ExecutionContext
from kanopy.core.errors import (
    CancelledError,
    ConfigurationError,
    DuplicateFunctionError,
    ErrorCategory,
    ExecutionError,
    FunctionNotFoundError,
    InvalidTransitionError,
    KanopyError,
    ObjectNotFoundError,
    PersistenceConflict,
    ResolutionError,
    TemplateError,
    TransientExecutionError,
    classify_error,
    is_retryable,
)
from kanopy.core.logging import LogContext, configure_logging, get_logger
from kanopy.core.settings import ActionExecution, EngineSettings, get_settings

__all__ = [
    "ActionExecution",
    "CancelledError",
    "ConfigurationError",
    "DuplicateFunctionError",
    "EngineSettings",
    "ErrorCategory",
    "ExecutionContext",
    "ExecutionError",
    "FunctionNotFoundError",
    "InvalidTransitionError",
    "KanopyError",
    "LogContext",
    "ObjectNotFoundError",
    "PersistenceConflict",
    "ResolutionError",
    "TemplateError",
    "TransientExecutionError",
    "classify_error",
    "configure_logging",
    "get_logger",
    "get_settings",
    "is_retryable",
]
