"""Phase Runner — executes one action's phases in declared order.

Manifesto:
Phases of an action form a chain: each may consume the outputs of the
phases before it.  The runner therefore never runs two phases of the same
action at once, and it stops at the first failure.  Every state change is
recorded on the caller's :class:`ActionStatus` and announced through an
optional progress callback so the reconciler can persist it.

ARCHITECTURE
────────────
::

    PhaseRunner.run(ctx, phases, status, context)
      │
      for each phase (in order):
      │   ctx cancelled?       → stop, phase stays PENDING, CancelledError
      │   PENDING → RUNNING    → on_progress
      │   render args          → TemplateError
      │   registry lookup      → FunctionNotFoundError (ConfigurationError)
      │   required args        → TemplateError
      │   validate             → ConfigurationError
      │   execute(child ctx)   → ExecutionError (classified)
      │   RUNNING → SUCCEEDED  → Phases.<name>.Output merged into context
      │   RUNNING → FAILED     → stop; later phases stay PENDING
      │   on_progress
      ▼
    PhaseRunResult(context, error)

Tags:
    kanopy, engine, phases, sequential

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from kanopy.core.context import ExecutionContext
from kanopy.core.errors import (
    CancelledError,
    ConfigurationError,
    ErrorCategory,
    ExecutionError,
    FunctionNotFoundError,
    KanopyError,
    TemplateError,
    classify_error,
)
from kanopy.core.logging import get_logger
from kanopy.cr.models import ActionStatus, BlueprintPhase, Phase, PhaseState
from kanopy.functions.base import Function
from kanopy.functions.registry import FunctionRegistry, get_default_registry
from kanopy.observability.metrics import EngineMetrics, get_engine_metrics
from kanopy.templates.context import TemplateContext
from kanopy.templates.renderer import render_args, to_text

logger = get_logger(__name__)

ProgressCallback = Callable[[ActionStatus], None]


@dataclass
class PhaseRunResult:
    """Outcome of running an action's phases."""

    context: TemplateContext
    error: KanopyError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class PhaseRunner:
    """Runs phases sequentially against a function registry.

    Args:
        registry: Where phase ``func`` names are looked up.
        phase_timeout: Optional per-phase deadline in seconds, applied to the
            child context each function receives.
        metrics: Engine metrics (defaults to the process-wide set).
    """

    def __init__(
        self,
        registry: FunctionRegistry | None = None,
        *,
        phase_timeout: float | None = None,
        metrics: EngineMetrics | None = None,
    ):
        self._registry = registry or get_default_registry()
        self._phase_timeout = phase_timeout
        self._metrics = metrics or get_engine_metrics()

    def run(
        self,
        ctx: ExecutionContext,
        phases: Sequence[BlueprintPhase],
        status: ActionStatus,
        context: TemplateContext,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> PhaseRunResult:
        """Run *phases*, recording progress on ``status.phases``.

        ``status.phases`` must hold one record per phase, in the same order.
        """
        if [p.name for p in status.phases] != [p.name for p in phases]:
            raise KanopyError(
                f"Status of action '{status.name}' does not match its blueprint phases",
                category=ErrorCategory.INTERNAL,
            )

        notify = on_progress or (lambda _status: None)

        for phase, record in zip(phases, status.phases, strict=True):
            if ctx.cancelled:
                logger.info("phase.cancelled", phase=phase.name, reason=ctx.reason)
                return PhaseRunResult(
                    context,
                    CancelledError(f"Action cancelled before phase '{phase.name}': {ctx.reason}"),
                )

            record.transition_to(PhaseState.RUNNING)
            notify(status)
            logger.info("phase.start", phase=phase.name, func=phase.func)

            started = time.monotonic()
            try:
                output = self._run_phase(ctx, phase, record, context)
            except KanopyError as error:
                self._finish(record, PhaseState.FAILED, started)
                record.error = error.to_info()
                logger.warning(
                    "phase.failed",
                    phase=phase.name,
                    func=phase.func,
                    error_type=type(error).__name__,
                    error=error.message,
                    retryable=error.retryable,
                )
                notify(status)
                return PhaseRunResult(context, error)

            record.output = output
            self._finish(record, PhaseState.SUCCEEDED, started)
            context = context.with_phase_output(phase.name, output)
            logger.info(
                "phase.complete",
                phase=phase.name,
                func=phase.func,
                outputs=sorted(output),
                duration_seconds=record.duration_seconds,
            )
            notify(status)

        return PhaseRunResult(context)

    def _run_phase(
        self,
        ctx: ExecutionContext,
        phase: BlueprintPhase,
        record: Phase,
        context: TemplateContext,
    ) -> dict[str, str]:
        args = render_args(phase.args, context, name=f"{phase.name}.args")
        record.args = args

        fn = self._registry.lookup(phase.func)
        if fn is None:
            raise FunctionNotFoundError(phase.func, self._registry.names())

        missing = fn.missing_args(args)
        if missing:
            raise TemplateError(
                f"Phase '{phase.name}': required argument(s) of {phase.func} "
                f"missing after rendering: {', '.join(missing)}"
            )

        self._validate(fn, args)

        with ctx.child(self._phase_timeout, phase=phase.name) as phase_ctx:
            try:
                result = fn.execute(phase_ctx, args)
            except ExecutionError as e:
                record.output = e.output
                raise
            except KanopyError:
                raise
            except Exception as e:
                raise classify_error(e) from e

        return _normalize_output(phase, result)

    @staticmethod
    def _validate(fn: Function, args: Mapping[str, str]) -> None:
        try:
            fn.validate(args)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(
                f"Invalid arguments for {fn.name}: {e}", cause=e
            ) from e

    def _finish(self, record: Phase, state: PhaseState, started: float) -> None:
        record.transition_to(state)
        self._metrics.phases.labels(func=record.func, state=state.value).inc()
        self._metrics.phase_duration.labels(func=record.func).observe(time.monotonic() - started)


def _normalize_output(phase: BlueprintPhase, result: Mapping[str, str] | None) -> dict[str, str]:
    if result is None:
        return {}
    if not isinstance(result, Mapping):
        raise ExecutionError(
            f"Function {phase.func} returned {type(result).__name__}, expected a mapping"
        )
    return {str(k): to_text(v) for k, v in result.items()}
