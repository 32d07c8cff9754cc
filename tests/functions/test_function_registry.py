"""Tests for the Function contract and the FunctionRegistry."""

from __future__ import annotations

import threading

import pytest

from kanopy.core.errors import ConfigurationError, DuplicateFunctionError, FunctionNotFoundError
from kanopy.functions.base import CallableFunction, Function
from kanopy.functions.registry import (
    FunctionRegistry,
    get_default_registry,
    register_function,
    reset_default_registry,
)


class CreateSnapshot(Function):
    name = "CreateSnapshot"
    required_args = ("pvc",)
    optional_args = ("labels",)
    description = "Snapshot a volume claim"

    def execute(self, ctx, args):
        return {"snapshotId": f"snap-{args['pvc']}"}


def _noop(ctx, args):
    """Does nothing."""
    return None


# ---------------------------------------------------------------------------
# Function contract
# ---------------------------------------------------------------------------


class TestFunction:
    def test_missing_args_counts_empty_as_missing(self):
        fn = CreateSnapshot()
        assert fn.missing_args({}) == ["pvc"]
        assert fn.missing_args({"pvc": ""}) == ["pvc"]
        assert fn.missing_args({"pvc": "data-db-0"}) == []

    def test_validate_rejects_undeclared(self):
        with pytest.raises(ConfigurationError, match="bogus"):
            CreateSnapshot().validate({"pvc": "x", "bogus": "y"})

    def test_undeclared_function_accepts_anything(self):
        CallableFunction("Any", _noop).validate({"0": "a", "x": "b"})

    def test_callable_validator_runs_after_name_check(self):
        def must_be_positive(args):
            if int(args["n"]) <= 0:
                raise ConfigurationError("n must be positive")

        fn = CallableFunction("Scale", _noop, required_args=["n"], validator=must_be_positive)
        fn.validate({"n": "2"})
        with pytest.raises(ConfigurationError, match="positive"):
            fn.validate({"n": "0"})

    def test_description_from_docstring(self):
        assert CallableFunction("Noop", _noop).description == "Does nothing."

    def test_repr(self):
        assert repr(CallableFunction("Noop", _noop)) == "CallableFunction(name='Noop')"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestFunctionRegistry:
    def test_register_and_lookup(self, registry):
        impl = registry.register("CreateSnapshot", CreateSnapshot())
        assert registry.lookup("CreateSnapshot") is impl
        assert registry.get("CreateSnapshot") is impl
        assert "CreateSnapshot" in registry
        assert registry.has("CreateSnapshot")
        assert len(registry) == 1

    def test_lookup_missing(self, registry):
        assert registry.lookup("Nope") is None
        with pytest.raises(FunctionNotFoundError):
            registry.get("Nope")

    def test_duplicate_rejected(self, registry):
        registry.register("Noop", CallableFunction("Noop", _noop))
        with pytest.raises(DuplicateFunctionError):
            registry.register("Noop", CallableFunction("Noop", _noop))

    def test_non_function_rejected(self, registry):
        with pytest.raises(ConfigurationError, match="not a Function"):
            registry.register("Noop", _noop)  # type: ignore[arg-type]

    def test_frozen_rejects_registration(self, registry):
        registry.freeze()
        assert registry.frozen
        with pytest.raises(ConfigurationError, match="frozen"):
            registry.register("Noop", CallableFunction("Noop", _noop))

    def test_names_sorted(self, registry):
        for name in ("Upload", "CreateSnapshot", "Delete"):
            registry.register(name, CallableFunction(name, _noop))
        assert registry.names() == ["CreateSnapshot", "Delete", "Upload"]

    def test_list_with_metadata(self, registry):
        registry.register("CreateSnapshot", CreateSnapshot())
        (entry,) = registry.list_with_metadata()
        assert entry == {
            "name": "CreateSnapshot",
            "required_args": ["pvc"],
            "optional_args": ["labels"],
            "description": "Snapshot a volume claim",
        }

    def test_concurrent_readers_during_registration(self, registry):
        errors: list[Exception] = []

        def read():
            try:
                for _ in range(500):
                    registry.names()
                    registry.lookup("F0")
            except Exception as e:  # pragma: no cover
                errors.append(e)

        readers = [threading.Thread(target=read) for _ in range(4)]
        for t in readers:
            t.start()
        for i in range(50):
            registry.register(f"F{i}", CallableFunction(f"F{i}", _noop))
        for t in readers:
            t.join()
        assert errors == []
        assert len(registry) == 50


# ---------------------------------------------------------------------------
# Default registry and decorator
# ---------------------------------------------------------------------------


class TestDecorator:
    def test_plain_callable(self):
        @register_function("Echo", required_args=["msg"])
        def echo(ctx, args):
            return {"msg": args["msg"]}

        fn = get_default_registry().get("Echo")
        assert isinstance(fn, CallableFunction)
        assert fn.required_args == ("msg",)
        assert echo(None, {"msg": "hi"}) == {"msg": "hi"}

    def test_function_subclass(self, registry):
        register_function("Snap", registry=registry)(CreateSnapshot)
        fn = registry.get("Snap")
        assert isinstance(fn, CreateSnapshot)
        assert fn.name == "CreateSnapshot"

    def test_reset_default_registry(self):
        first = get_default_registry()
        reset_default_registry()
        assert get_default_registry() is not first
