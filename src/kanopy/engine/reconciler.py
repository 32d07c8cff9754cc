"""ActionSet Reconciler — drives an ActionSet from submission to a terminal state.

Manifesto:
An ActionSet is created once and then owned by the engine, which only
ever writes its ``status``.  Every write goes through a compare-and-swap
loop so concurrent writers (the actions of the same set, or another
process) never lose each other's updates.  Terminal states are sticky:
reconciling a ``complete`` or ``failed`` ActionSet again does nothing.

ARCHITECTURE
────────────
::

    reconcile(ref)
      ├── pending final write for ref?   → retry it, done
      ├── already driven in-process?     → no-op
      ├── status terminal?               → no-op
      ├── status RUNNING, not in-flight  → interrupted: fail open actions
      └── status None / PENDING
            ├── init one pending ActionStatus per ActionSpec   (mandatory write)
            ├── dispatch actions                               (pool or sequential)
            │     └── ActionController.run(...)
            │           └── on_progress → status.actions[i]    (best-effort write)
            ├── aggregate: any failed → FAILED, all succeeded → COMPLETE
            └── persist final status                           (mandatory write)

    cancel(ref)   ─ cancels the ExecutionContext of an in-flight ActionSet

Concurrency:
    One ``ThreadPoolExecutor`` per ActionSet, bounded by
    ``max_action_workers``.  Phases inside an action are sequential.
    ``action_execution = sequential`` runs actions one by one in the
    calling thread.

Tags:
    kanopy, engine, reconciler, optimistic-concurrency

Doc-Types:
    api-reference, architecture
"""

from __future__ import annotations

import contextvars
import copy
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kanopy.core.context import ExecutionContext
from kanopy.core.errors import (
    ExecutionError,
    ObjectNotFoundError,
    PersistenceConflict,
    classify_error,
)
from kanopy.core.logging import LogContext, get_logger
from kanopy.core.retry import ExponentialBackoff
from kanopy.core.settings import ActionExecution, EngineSettings, get_settings
from kanopy.cr.models import (
    ActionSet,
    ActionSetState,
    ActionSetStatus,
    ActionSpec,
    ActionState,
    ActionStatus,
    Blueprint,
    BlueprintAction,
    ObjectReference,
    PhaseState,
    aggregate_state,
    blueprint_ref,
)
from kanopy.engine.action_controller import ActionController
from kanopy.functions.registry import FunctionRegistry
from kanopy.observability.metrics import EngineMetrics, get_engine_metrics
from kanopy.store.base import ObjectStore
from kanopy.store.status import update_with_retry

logger = get_logger(__name__)


class _Superseded(Exception):
    """Another writer already started this ActionSet."""


class ActionSetReconciler:
    """Reconciles ActionSets held in an :class:`ObjectStore`.

    Example:
        >>> reconciler = ActionSetReconciler(store, registry)
        >>> result = reconciler.reconcile(actionset_ref("nightly", "prod"))
        >>> result.status.state
        <ActionSetState.COMPLETE: 'complete'>
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: FunctionRegistry | None = None,
        *,
        settings: EngineSettings | None = None,
        metrics: EngineMetrics | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._settings = settings or get_settings()
        self._metrics = metrics or get_engine_metrics()
        self._sleep = sleep
        self._controller = ActionController(
            store,
            registry,
            phase_timeout=self._settings.phase_timeout_seconds,
            metrics=self._metrics,
        )
        self._lock = threading.Lock()
        self._in_flight: dict[tuple[str, str, str, str], ExecutionContext] = {}
        self._pending_final: dict[tuple[str, str, str, str], ActionSetStatus] = {}

    # ── public API ───────────────────────────────────────────────

    def reconcile(self, ref: ObjectReference) -> ActionSet | None:
        """Bring the ActionSet at *ref* to a terminal state.

        Returns:
            The ActionSet as last written, or ``None`` if there was nothing to
            do (already in flight, deleted).

        Raises:
            PersistenceConflict: The initial or final status write lost every
                retry.  The final status is kept and written on the next call.
        """
        with self._lock:
            pending = self._pending_final.get(ref.key)
            in_flight = ref.key in self._in_flight
        if pending is not None:
            return self._write_final(ref, pending)
        if in_flight:
            logger.debug("actionset.in_flight", actionset=str(ref))
            return None

        try:
            stored = self._store.get(ref)
        except ObjectNotFoundError:
            logger.info("actionset.not_found", actionset=str(ref))
            return None

        actionset: ActionSet = stored.obj
        status = actionset.status
        if status is not None and status.state.is_terminal:
            logger.debug("actionset.terminal", actionset=str(ref), state=status.state.value)
            return actionset
        if status is not None and status.state == ActionSetState.RUNNING:
            return self._finish_interrupted(ref)

        ctx = ExecutionContext(values={"actionset": str(ref)})
        with self._lock:
            if ref.key in self._in_flight:
                return None
            self._in_flight[ref.key] = ctx
        try:
            with LogContext(actionset=actionset.name, namespace=actionset.namespace):
                return self._drive(ref, actionset, ctx)
        finally:
            with self._lock:
                self._in_flight.pop(ref.key, None)

    def cancel(self, ref: ObjectReference, reason: str = "actionset deleted") -> bool:
        """Cancel an in-flight ActionSet. Returns False if it was not running here."""
        with self._lock:
            ctx = self._in_flight.get(ref.key)
            self._pending_final.pop(ref.key, None)
        if ctx is None:
            return False
        logger.info("actionset.cancel", actionset=str(ref), reason=reason)
        ctx.cancel(reason)
        return True

    def in_flight(self, ref: ObjectReference) -> bool:
        with self._lock:
            return ref.key in self._in_flight

    # ── driving ──────────────────────────────────────────────────

    def _drive(self, ref: ObjectReference, actionset: ActionSet, ctx: ExecutionContext) -> ActionSet | None:
        namespace = actionset.namespace
        specs = actionset.spec.actions
        statuses = [
            ActionStatus.pending_for(spec, self._blueprint_action(spec, namespace))
            for spec in specs
        ]

        def start(current: ActionSet) -> None:
            if current.status is not None and current.status.state != ActionSetState.PENDING:
                raise _Superseded()
            current.status = ActionSetStatus(
                state=ActionSetState.RUNNING, actions=copy.deepcopy(statuses)
            )

        try:
            self._update(ref, start)
        except _Superseded:
            logger.info("actionset.superseded", actionset=str(ref))
            return None
        except ObjectNotFoundError:
            logger.info("actionset.deleted", actionset=str(ref))
            return None

        logger.info("actionset.start", actions=len(specs), mode=self._settings.action_execution.value)
        started = time.monotonic()

        if self._settings.action_execution == ActionExecution.SEQUENTIAL or len(specs) <= 1:
            for index, spec in enumerate(specs):
                self._run_action(ref, ctx, namespace, index, spec, statuses[index])
        else:
            workers = min(self._settings.max_action_workers, len(specs))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kanopy-action") as pool:
                # Workers run in a copy of this thread's context so bound log fields carry over.
                futures = [
                    pool.submit(
                        contextvars.copy_context().run,
                        self._run_action, ref, ctx, namespace, i, spec, statuses[i],
                    )
                    for i, spec in enumerate(specs)
                ]
                for future in futures:
                    future.result()

        final = ActionSetStatus(
            state=aggregate_state(s.state for s in statuses),
            actions=statuses,
        )
        logger.info(
            "actionset.complete",
            state=final.state.value,
            duration_seconds=round(time.monotonic() - started, 3),
            failed=[s.name for s in statuses if s.state == ActionState.FAILED],
        )
        return self._write_final(ref, final)

    def _run_action(
        self,
        ref: ObjectReference,
        ctx: ExecutionContext,
        namespace: str,
        index: int,
        spec: ActionSpec,
        status: ActionStatus,
    ) -> None:
        with LogContext(action_index=index, action=spec.name):
            try:
                self._controller.run(
                    ctx,
                    spec,
                    status,
                    namespace=namespace,
                    on_progress=lambda s: self._persist_action(ref, index, s),
                )
            except Exception as e:
                # Engine bug rather than a function failure; record it on the action.
                logger.exception("action.crashed", error=str(e))
                error = classify_error(e)
                status.error = error.to_info()
                if not status.state.is_terminal:
                    status.transition_to(ActionState.FAILED)

    def _persist_action(self, ref: ObjectReference, index: int, status: ActionStatus) -> None:
        snapshot = copy.deepcopy(status)

        def apply(current: ActionSet) -> None:
            if current.status is None or index >= len(current.status.actions):
                return
            current.status.actions[index] = snapshot

        try:
            self._update(ref, apply)
        except PersistenceConflict as e:
            logger.warning("status.progress_dropped", action_index=index, attempts=e.attempts)
        except ObjectNotFoundError:
            logger.debug("status.progress_orphaned", action_index=index)

    def _write_final(self, ref: ObjectReference, final: ActionSetStatus) -> ActionSet | None:
        def apply(current: ActionSet) -> None:
            current.status = copy.deepcopy(final)

        try:
            stored = self._update(ref, apply)
        except PersistenceConflict:
            with self._lock:
                self._pending_final[ref.key] = final
            logger.error("actionset.final_write_failed", actionset=str(ref), state=final.state.value)
            raise
        except ObjectNotFoundError:
            with self._lock:
                self._pending_final.pop(ref.key, None)
            logger.info("actionset.deleted", actionset=str(ref))
            return None

        with self._lock:
            self._pending_final.pop(ref.key, None)
        self._metrics.actionsets.labels(state=final.state.value).inc()
        return stored.obj

    # ── helpers ──────────────────────────────────────────────────

    def _finish_interrupted(self, ref: ObjectReference) -> ActionSet | None:
        """Fail the open actions of an ActionSet nobody is driving any more.

        Phases are never re-run: a phase found ``running`` is failed with a
        retryable error, and so is every action that had not finished.
        """
        # The driver registers before its first write and unregisters after
        # its last, so a RUNNING status read here is only orphaned if no
        # driver is registered now.
        if self.in_flight(ref):
            return None

        error = ExecutionError(
            "interrupted: engine stopped while the action was running", retryable=True
        )
        failed: list[str] = []

        def fail_open(current: ActionSet) -> None:
            status = current.status
            if status is None or status.state != ActionSetState.RUNNING:
                raise _Superseded()
            failed.clear()
            for action in status.actions:
                if action.state.is_terminal:
                    continue
                for phase in action.phases:
                    if phase.state == PhaseState.RUNNING:
                        phase.error = error.to_info()
                        phase.transition_to(PhaseState.FAILED)
                action.error = error.to_info()
                action.transition_to(ActionState.FAILED)
                failed.append(action.name)
            status.state = aggregate_state(a.state for a in status.actions)

        try:
            stored = self._update(ref, fail_open)
        except _Superseded:
            logger.debug("actionset.superseded", actionset=str(ref))
            return None
        except ObjectNotFoundError:
            logger.info("actionset.deleted", actionset=str(ref))
            return None

        actionset: ActionSet = stored.obj
        assert actionset.status is not None
        for _ in failed:
            self._metrics.actions.labels(state=ActionState.FAILED.value).inc()
        self._metrics.actionsets.labels(state=actionset.status.state.value).inc()
        logger.warning(
            "actionset.interrupted",
            actionset=str(ref),
            state=actionset.status.state.value,
            failed=failed,
        )
        return actionset

    def _blueprint_action(self, spec: ActionSpec, namespace: str) -> BlueprintAction | None:
        # Only used to list pending phases up front; resolution errors surface later.
        try:
            blueprint = self._store.get(blueprint_ref(spec.blueprint, namespace)).obj
        except ObjectNotFoundError:
            return None
        if not isinstance(blueprint, Blueprint):
            return None
        return blueprint.get_action(spec.name)

    def _update(self, ref: ObjectReference, mutate: Callable[[Any], None]) -> Any:
        return update_with_retry(
            self._store,
            ref,
            mutate,
            strategy=ExponentialBackoff(
                max_retries=self._settings.status_update_retries - 1,
                base_delay=self._settings.status_retry_base_delay,
            ),
            sleep=self._sleep,
        )


__all__ = ["ActionSetReconciler"]
