"""Tests for the kanopy error hierarchy and classification helpers."""

from __future__ import annotations

import pytest

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


# ---------------------------------------------------------------------------
# Categories and retry defaults
# ---------------------------------------------------------------------------


class TestDefaults:
    @pytest.mark.parametrize(
        ("cls", "category", "retryable"),
        [
            (ResolutionError, ErrorCategory.RESOLUTION, False),
            (TemplateError, ErrorCategory.TEMPLATE, False),
            (ConfigurationError, ErrorCategory.CONFIG, False),
            (ExecutionError, ErrorCategory.EXECUTION, False),
            (TransientExecutionError, ErrorCategory.EXECUTION, True),
            (CancelledError, ErrorCategory.CANCELLED, False),
            (PersistenceConflict, ErrorCategory.PERSISTENCE, True),
        ],
    )
    def test_category_and_retryable(self, cls, category, retryable):
        err = cls("boom")
        assert err.category == category
        assert err.retryable is retryable

    def test_override_per_instance(self):
        err = ExecutionError("flaky", retryable=True, category=ErrorCategory.UNKNOWN)
        assert err.retryable is True
        assert err.category == ErrorCategory.UNKNOWN

    def test_cause_is_chained(self):
        cause = OSError("disk gone")
        err = ExecutionError("upload failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "disk gone"


class TestSpecialisedErrors:
    def test_duplicate_function(self):
        err = DuplicateFunctionError("Upload")
        assert isinstance(err, ConfigurationError)
        assert err.function_name == "Upload"
        assert "Upload" in err.message

    def test_function_not_found_lists_available(self):
        err = FunctionNotFoundError("Nope", ["A", "B"])
        assert "A, B" in err.message
        assert FunctionNotFoundError("Nope").message.endswith("(none)")

    def test_execution_error_keeps_partial_output(self):
        err = ExecutionError("half done", output={"bytes": "10"})
        assert err.output == {"bytes": "10"}

    def test_object_not_found_keeps_ref(self):
        err = ObjectNotFoundError("prod/db-0")
        assert err.ref == "prod/db-0"
        assert err.category == ErrorCategory.NOT_FOUND

    def test_invalid_transition_is_value_error(self):
        err = InvalidTransitionError("succeeded", "running", "PhaseState")
        assert isinstance(err, ValueError)
        assert "succeeded → running" in err.message


# ---------------------------------------------------------------------------
# Serialisation and classification
# ---------------------------------------------------------------------------


class TestToInfo:
    def test_to_info_fields(self):
        info = ResolutionError("no secret bound for role creds").to_info()
        assert info.type == "ResolutionError"
        assert info.category == "RESOLUTION"
        assert info.retryable is False
        assert "creds" in info.message


class TestClassifyError:
    def test_engine_errors_pass_through(self):
        err = TemplateError("undefined path .X")
        assert classify_error(err) is err

    def test_foreign_exception_wrapped(self):
        original = RuntimeError("kaput")
        err = classify_error(original)
        assert isinstance(err, ExecutionError)
        assert err.category == ErrorCategory.UNKNOWN
        assert err.retryable is False
        assert err.cause is original
        assert err.message == "RuntimeError: kaput"

    def test_is_retryable(self):
        assert is_retryable(TransientExecutionError("x"))
        assert not is_retryable(ConfigurationError("x"))
        assert not is_retryable(ValueError("x"))

    def test_repr(self):
        assert repr(KanopyError("x")) == "KanopyError('x', category=INTERNAL)"
