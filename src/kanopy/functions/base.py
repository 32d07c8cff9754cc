"""Function contract — what every phase ultimately invokes.

A Blueprint phase names a function (``func: CreateSnapshot``); the phase
runner looks that name up in the :mod:`~kanopy.functions.registry` and
calls the two methods below with the phase's rendered arguments.

ARCHITECTURE
────────────
::

    Function (ABC)
      ├── .name                     ─ registry key
      ├── .required_args            ─ must be present after rendering
      ├── .optional_args            ─ may be present
      ├── .validate(args)           ─ cheap pre-execution check, raises
      └── .execute(ctx, args)       ─ does the work, returns output map

    CallableFunction                ─ adapts a plain ``fn(ctx, args)``

Arguments and outputs are flat ``str → str`` mappings.  Outputs are
exposed to later phases as ``{{ .Phases.<phase>.Output.<key> }}``.

BEST PRACTICES
──────────────
- Raise ``ConfigurationError`` from ``validate`` for arguments that can
  never work; the engine does not retry those.
- Raise ``TransientExecutionError`` from ``execute`` when re-submitting
  the whole action could plausibly succeed.
- Honour ``ctx.cancelled`` / ``ctx.check()`` in long loops.

Tags:
    kanopy, functions, contract, plugin

Doc-Types:
    api-reference
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence

from kanopy.core.context import ExecutionContext
from kanopy.core.errors import ConfigurationError


class Function(ABC):
    """Base class for registered functions."""

    name: str = ""
    required_args: Sequence[str] = ()
    optional_args: Sequence[str] = ()
    description: str = ""

    def validate(self, args: Mapping[str, str]) -> None:
        """Reject arguments the function does not declare.

        Functions that declare no arguments at all accept anything.
        Override to add value checks; call ``super().validate(args)`` to
        keep the name check.
        """
        declared = set(self.required_args) | set(self.optional_args)
        if not declared:
            return
        unsupported = sorted(set(args) - declared)
        if unsupported:
            raise ConfigurationError(
                f"Function '{self.name}' does not support argument(s): {', '.join(unsupported)}"
            )

    def missing_args(self, args: Mapping[str, str]) -> list[str]:
        """Required argument names absent from *args* (or rendered empty)."""
        return [a for a in self.required_args if not args.get(a)]

    @abstractmethod
    def execute(self, ctx: ExecutionContext, args: Mapping[str, str]) -> Mapping[str, str] | None:
        """Run the function; return its output map (``None`` means empty)."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class CallableFunction(Function):
    """Adapts a plain callable ``fn(ctx, args) -> dict | None``."""

    def __init__(
        self,
        name: str,
        fn: Callable[[ExecutionContext, Mapping[str, str]], Mapping[str, str] | None],
        *,
        required_args: Sequence[str] = (),
        optional_args: Sequence[str] = (),
        validator: Callable[[Mapping[str, str]], None] | None = None,
        description: str | None = None,
    ) -> None:
        self.name = name
        self._fn = fn
        self.required_args = tuple(required_args)
        self.optional_args = tuple(optional_args)
        self._validator = validator
        self.description = description or (fn.__doc__ or "").strip()

    def validate(self, args: Mapping[str, str]) -> None:
        super().validate(args)
        if self._validator is not None:
            self._validator(args)

    def execute(self, ctx: ExecutionContext, args: Mapping[str, str]) -> Mapping[str, str] | None:
        return self._fn(ctx, args)
