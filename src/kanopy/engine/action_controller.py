"""Action Controller — runs one ActionSpec end to end.

Resolves every binding the blueprint action needs, drives the
:class:`PhaseRunner`, then renders the action's output artifacts against
the final context.  Resolution happens completely before the first phase
starts: a missing blueprint, config map, secret, input artifact, target
object or profile fails the action with ``ResolutionError`` and no phase
ever leaves ``pending``.

Actions are islands.  A controller only ever touches the ``ActionStatus``
it was handed and never looks at sibling actions.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from kanopy.core.context import ExecutionContext
from kanopy.core.errors import (
    CancelledError,
    KanopyError,
    ObjectNotFoundError,
    ResolutionError,
    TemplateError,
)
from kanopy.core.logging import get_logger
from kanopy.cr.models import (
    API_GROUP,
    CONFIGMAP_RESOURCE,
    PROFILE_RESOURCE,
    SECRET_RESOURCE,
    ActionSpec,
    ActionState,
    ActionStatus,
    Artifact,
    Blueprint,
    BlueprintAction,
    ConfigMap,
    ObjectReference,
    Phase,
    Profile,
    Secret,
    TargetObject,
    blueprint_ref,
    utcnow,
)
from kanopy.engine.phase_runner import PhaseRunner, ProgressCallback
from kanopy.functions.registry import FunctionRegistry
from kanopy.observability.metrics import EngineMetrics, get_engine_metrics
from kanopy.store.base import ObjectStore
from kanopy.templates.context import TemplateContext, build_context
from kanopy.templates.renderer import render_args

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class ResolvedAction:
    """Everything an action needs before its first phase runs."""

    blueprint: Blueprint
    action: BlueprintAction
    context: TemplateContext


class ActionController:
    """Resolves, runs and finalises a single action.

    Args:
        store: Where blueprints and bound objects are read from.
        registry: Function registry handed to the phase runner.
        phase_timeout: Optional per-phase deadline in seconds.
        clock: Source of the ``Time`` template value.
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: FunctionRegistry | None = None,
        *,
        phase_timeout: float | None = None,
        metrics: EngineMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._metrics = metrics or get_engine_metrics()
        self._runner = PhaseRunner(registry, phase_timeout=phase_timeout, metrics=self._metrics)
        self._clock = clock

    # ── resolution ───────────────────────────────────────────────

    def resolve(self, spec: ActionSpec, namespace: str = "") -> ResolvedAction:
        """Resolve every binding of *spec*.

        Raises:
            ResolutionError: Any referenced object or binding is missing.
        """
        blueprint = self._fetch(
            blueprint_ref(spec.blueprint, namespace), Blueprint, f"blueprint '{spec.blueprint}'"
        )
        action = blueprint.get_action(spec.name)
        if action is None:
            raise ResolutionError(
                f"Blueprint '{spec.blueprint}' has no action '{spec.name}'"
            )

        config_maps = self._resolve_roles(
            "config map", action.config_map_names, spec.config_maps,
            CONFIGMAP_RESOURCE, namespace, ConfigMap,
        )
        secrets = self._resolve_roles(
            "secret", action.secret_names, spec.secrets,
            SECRET_RESOURCE, namespace, Secret,
        )

        missing_artifacts = [n for n in action.input_artifact_names if n not in spec.artifacts]
        if missing_artifacts:
            raise ResolutionError(
                f"Action '{spec.name}' is missing input artifact(s): {', '.join(missing_artifacts)}"
            )

        target_ref = spec.object.with_defaults(namespace=namespace)
        stored_target = self._fetch(target_ref, object, f"target object {target_ref}")
        target = (
            stored_target
            if isinstance(stored_target, TargetObject)
            else TargetObject(ref=target_ref)
        )

        profile = None
        if spec.profile is not None:
            profile_ref = spec.profile.with_defaults(
                resource=PROFILE_RESOURCE, namespace=namespace, group=API_GROUP
            )
            profile = self._fetch(profile_ref, Profile, f"profile {profile_ref}")

        context = build_context(
            spec,
            namespace=namespace,
            target=target,
            config_maps=config_maps,
            secrets=secrets,
            profile=profile,
            now=self._clock(),
        )
        return ResolvedAction(blueprint=blueprint, action=action, context=context)

    def _resolve_roles(
        self,
        kind: str,
        required: list[str],
        bound: Mapping[str, ObjectReference],
        resource: str,
        namespace: str,
        expected: type[T],
    ) -> dict[str, T]:
        unbound = [role for role in required if role not in bound]
        if unbound:
            raise ResolutionError(f"No {kind} bound for role(s): {', '.join(unbound)}")
        resolved: dict[str, T] = {}
        for role, ref in bound.items():
            full = ref.with_defaults(resource=resource, namespace=namespace)
            resolved[role] = self._fetch(full, expected, f"{kind} '{role}' ({full})")
        return resolved

    def _fetch(self, ref: ObjectReference, expected: type[Any], what: str) -> Any:
        try:
            obj = self._store.get(ref).obj
        except ObjectNotFoundError as e:
            raise ResolutionError(f"Cannot resolve {what}: not found", cause=e) from e
        if not isinstance(obj, expected):
            raise ResolutionError(
                f"Cannot resolve {what}: stored object is a {type(obj).__name__}"
            )
        return obj

    # ── execution ────────────────────────────────────────────────

    def run(
        self,
        ctx: ExecutionContext,
        spec: ActionSpec,
        status: ActionStatus,
        *,
        namespace: str = "",
        on_progress: ProgressCallback | None = None,
    ) -> ActionStatus:
        """Drive *status* to a terminal state and return it."""
        notify = on_progress or (lambda _status: None)

        if ctx.cancelled:
            return self._fail(status, CancelledError(f"Action cancelled: {ctx.reason}"), notify)

        try:
            resolved = self.resolve(spec, namespace)
        except ResolutionError as e:
            return self._fail(status, e, notify)

        declared = resolved.action.phases
        if [p.name for p in status.phases] != [p.name for p in declared]:
            status.phases = [Phase(name=p.name, func=p.func) for p in declared]

        if status.state == ActionState.PENDING:
            status.transition_to(ActionState.RUNNING)
        notify(status)
        logger.info("action.start", action=spec.name, blueprint=spec.blueprint, phases=len(declared))

        self._metrics.active_actions.inc()
        try:
            result = self._runner.run(ctx, declared, status, resolved.context, on_progress=notify)
        finally:
            self._metrics.active_actions.dec()

        if result.error is not None:
            return self._fail(status, result.error, notify)

        try:
            status.artifacts = self._render_artifacts(resolved.action, result.context)
        except TemplateError as e:
            return self._fail(status, e, notify)

        status.transition_to(ActionState.SUCCEEDED)
        self._metrics.actions.labels(state=ActionState.SUCCEEDED.value).inc()
        logger.info("action.complete", action=spec.name, artifacts=sorted(status.artifacts))
        notify(status)
        return status

    @staticmethod
    def _render_artifacts(action: BlueprintAction, context: TemplateContext) -> dict[str, Artifact]:
        return {
            name: Artifact(render_args(template, context, name=f"outputArtifacts.{name}"))
            for name, template in action.output_artifacts.items()
        }

    def _fail(
        self, status: ActionStatus, error: KanopyError, notify: ProgressCallback
    ) -> ActionStatus:
        status.error = error.to_info()
        status.transition_to(ActionState.FAILED)
        self._metrics.actions.labels(state=ActionState.FAILED.value).inc()
        logger.warning(
            "action.failed",
            action=status.name,
            error_type=type(error).__name__,
            error=error.message,
            retryable=error.retryable,
        )
        notify(status)
        return status
