"""Function Registry: process-wide name → Function lookup.

Manifesto:
Blueprints refer to functions by name.  The registry decouples
registration (at import time or startup) from resolution (at phase
execution time).  It is populated once, frozen, and then read
concurrently by every phase runner without locking.

ARCHITECTURE
────────────
::

    FunctionRegistry
      ├── .register(name, impl)   ─ store; duplicate → DuplicateFunctionError
      ├── .lookup(name)           ─ Function or None
      ├── .get(name)              ─ Function or FunctionNotFoundError
      ├── .freeze()               ─ reject further registration
      └── .names()                ─ sorted registered names

    register_function(name)      ─ decorator, global registry
    get_default_registry()       ─ module-level singleton
    reset_default_registry()     ─ clear for testing

BEST PRACTICES
──────────────
- Register plugins before the controller starts; the controller freezes
  the registry it is given.
- Pass an explicit ``FunctionRegistry`` in tests, or call
  ``reset_default_registry()`` in a fixture.

Tags:
    kanopy, functions, registry, lookup

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from typing import Any

from kanopy.core.errors import ConfigurationError, DuplicateFunctionError, FunctionNotFoundError
from kanopy.core.logging import get_logger
from kanopy.functions.base import CallableFunction, Function

logger = get_logger(__name__)


class FunctionRegistry:
    """Injectable function registry.

    Example:
        >>> registry = FunctionRegistry()
        >>> registry.register("Noop", CallableFunction("Noop", lambda ctx, args: {}))
        >>> registry.freeze()
        >>> registry.lookup("Noop")
        CallableFunction(name='Noop')
    """

    def __init__(self) -> None:
        self._functions: dict[str, Function] = {}
        self._write_lock = threading.Lock()
        self._frozen = False

    def register(self, name: str, impl: Function) -> Function:
        """Register *impl* under *name*.

        Raises:
            DuplicateFunctionError: *name* is already taken.
            ConfigurationError: The registry is frozen or *impl* is not a Function.
        """
        if not isinstance(impl, Function):
            raise ConfigurationError(
                f"Cannot register {type(impl).__name__} as '{name}': not a Function"
            )
        with self._write_lock:
            if self._frozen:
                raise ConfigurationError(f"Cannot register '{name}': function registry is frozen")
            if name in self._functions:
                raise DuplicateFunctionError(name)
            # Readers never take the lock; publish a new dict instead of mutating.
            self._functions = {**self._functions, name: impl}

        logger.debug("function.registered", name=name, impl=type(impl).__name__)
        return impl

    def lookup(self, name: str) -> Function | None:
        return self._functions.get(name)

    def get(self, name: str) -> Function:
        impl = self._functions.get(name)
        if impl is None:
            raise FunctionNotFoundError(name, self.names())
        return impl

    def has(self, name: str) -> bool:
        return name in self._functions

    def names(self) -> list[str]:
        return sorted(self._functions)

    def freeze(self) -> None:
        """Disallow further registration."""
        with self._write_lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def list_with_metadata(self) -> list[dict[str, Any]]:
        """Describe registered functions (CLI / docs)."""
        return [
            {
                "name": name,
                "required_args": list(fn.required_args),
                "optional_args": list(fn.optional_args),
                "description": fn.description,
            }
            for name, fn in sorted(self._functions.items())
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)


# === GLOBAL DEFAULT REGISTRY ===

_default_registry: FunctionRegistry | None = None


def get_default_registry() -> FunctionRegistry:
    """Get the global default registry, creating it lazily."""
    global _default_registry
    if _default_registry is None:
        _default_registry = FunctionRegistry()
    return _default_registry


def reset_default_registry() -> None:
    """Reset the global registry (for testing)."""
    global _default_registry
    _default_registry = None


# === DECORATOR API ===


def register_function(
    name: str,
    *,
    registry: FunctionRegistry | None = None,
    required_args: Sequence[str] = (),
    optional_args: Sequence[str] = (),
    description: str | None = None,
) -> Callable[[Any], Any]:
    """Decorator registering a ``Function`` subclass or a plain callable.

    Example:
        >>> @register_function("CreateSnapshot", required_args=["pvc"])
        ... def create_snapshot(ctx, args):
        ...     return {"snapshotId": snapshot(args["pvc"])}

        >>> @register_function("Upload")
        ... class Upload(Function):
        ...     def execute(self, ctx, args):
        ...         ...
    """

    def decorator(target: Any) -> Any:
        target_registry = registry or get_default_registry()
        if isinstance(target, type) and issubclass(target, Function):
            impl = target()
            impl.name = impl.name or name
        else:
            impl = CallableFunction(
                name,
                target,
                required_args=required_args,
                optional_args=optional_args,
                description=description,
            )
        target_registry.register(name, impl)
        return target

    return decorator
