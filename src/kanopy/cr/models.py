"""Custom-resource models — Blueprints, ActionSets and their status.

These are plain dataclasses with value semantics.  Cloning is
``copy.deepcopy``; nothing in the engine mutates an object it did not
copy first, and the store hands out copies on every read.

Valid phase transition graph::

    PENDING  → RUNNING
    RUNNING  → SUCCEEDED | FAILED
    SUCCEEDED, FAILED → (terminal)

Valid action transition graph::

    PENDING  → RUNNING | FAILED
    RUNNING  → SUCCEEDED | FAILED
    SUCCEEDED, FAILED → (terminal)

ActionSet aggregate::

    any action FAILED          → FAILED
    all actions SUCCEEDED      → COMPLETE
    otherwise                  → RUNNING
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kanopy.core.errors import InvalidTransitionError

API_GROUP = "cr.kanopy.io"
API_VERSION = "v1alpha1"

BLUEPRINT_RESOURCE = "blueprints"
ACTIONSET_RESOURCE = "actionsets"
PROFILE_RESOURCE = "profiles"
CONFIGMAP_RESOURCE = "configmaps"
SECRET_RESOURCE = "secrets"


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


# =============================================================================
# States
# =============================================================================


class PhaseState(str, Enum):
    """State of a single phase."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ActionState(str, Enum):
    """State of one action within an ActionSet."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionState.SUCCEEDED, ActionState.FAILED)


class ActionSetState(str, Enum):
    """Aggregate state of an ActionSet."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionSetState.COMPLETE, ActionSetState.FAILED)


PHASE_VALID_TRANSITIONS: dict[PhaseState, frozenset[PhaseState]] = {
    PhaseState.PENDING: frozenset({PhaseState.RUNNING}),
    PhaseState.RUNNING: frozenset({PhaseState.SUCCEEDED, PhaseState.FAILED}),
    PhaseState.SUCCEEDED: frozenset(),
    PhaseState.FAILED: frozenset(),
}

ACTION_VALID_TRANSITIONS: dict[ActionState, frozenset[ActionState]] = {
    ActionState.PENDING: frozenset({ActionState.RUNNING, ActionState.FAILED}),
    ActionState.RUNNING: frozenset({ActionState.SUCCEEDED, ActionState.FAILED}),
    ActionState.SUCCEEDED: frozenset(),
    ActionState.FAILED: frozenset(),
}


def validate_phase_transition(current: PhaseState, target: PhaseState) -> None:
    """Raise ``InvalidTransitionError`` if *current* → *target* is illegal."""
    if target not in PHASE_VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value, "PhaseState")


def validate_action_transition(current: ActionState, target: ActionState) -> None:
    """Raise ``InvalidTransitionError`` if *current* → *target* is illegal."""
    if target not in ACTION_VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value, "ActionState")


def aggregate_state(states: Iterable[ActionState]) -> ActionSetState:
    """Fold per-action states into the ActionSet aggregate state."""
    states = list(states)
    if any(s == ActionState.FAILED for s in states):
        return ActionSetState.FAILED
    # An ActionSet with no actions has nothing left to do.
    if all(s == ActionState.SUCCEEDED for s in states):
        return ActionSetState.COMPLETE
    return ActionSetState.RUNNING


# =============================================================================
# References and artifacts
# =============================================================================


@dataclass(frozen=True)
class ObjectReference:
    """Generic pointer to any object in the cluster store."""

    name: str
    namespace: str = ""
    resource: str = ""
    group: str = ""
    api_version: str = ""

    @property
    def key(self) -> tuple[str, str, str, str]:
        """Store key. The API version is not part of an object's identity."""
        return (self.group, self.resource, self.namespace, self.name)

    def with_defaults(
        self, *, resource: str = "", namespace: str = "", group: str = ""
    ) -> ObjectReference:
        """Fill in an empty resource, namespace or group."""
        return ObjectReference(
            name=self.name,
            namespace=self.namespace or namespace,
            resource=self.resource or resource,
            group=self.group or group,
            api_version=self.api_version,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "resource": self.resource,
            "group": self.group,
            "api_version": self.api_version,
        }

    def __str__(self) -> str:
        resource = f"{self.resource}.{self.group}" if self.group else self.resource
        path = f"{self.namespace}/{self.name}" if self.namespace else self.name
        return f"{resource}/{path}" if resource else path


@dataclass(frozen=True)
class Artifact:
    """Immutable named bag of key/value strings."""

    key_values: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"key_values": dict(self.key_values)}


@dataclass
class ErrorInfo:
    """Error classification recorded on a failed phase or action."""

    type: str
    message: str
    category: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "category": self.category,
            "retryable": self.retryable,
        }


# =============================================================================
# Bound objects
# =============================================================================


@dataclass
class ConfigMap:
    """Plain configuration data bound to an action by role."""

    name: str
    namespace: str = ""
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Secret:
    """Sensitive data bound to an action by role. ``data`` holds decoded strings."""

    name: str
    namespace: str = ""
    type: str = "Opaque"
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Profile:
    """Where artifacts go and the credential used to reach it."""

    name: str
    namespace: str = ""
    location: dict[str, str] = field(default_factory=dict)
    credential: dict[str, str] = field(default_factory=dict)


@dataclass
class TargetObject:
    """Any other stored object an action may target (a workload, a claim, ...)."""

    ref: ObjectReference
    body: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Blueprint
# =============================================================================


@dataclass
class BlueprintPhase:
    """One step of an operation: a function name plus templated arguments."""

    name: str
    func: str
    args: dict[str, str] = field(default_factory=dict)


@dataclass
class BlueprintAction:
    """One operation definition within a Blueprint."""

    name: str
    kind: str = ""
    phases: list[BlueprintPhase] = field(default_factory=list)
    config_map_names: list[str] = field(default_factory=list)
    secret_names: list[str] = field(default_factory=list)
    input_artifact_names: list[str] = field(default_factory=list)
    output_artifacts: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass
class Blueprint:
    """Named, reusable operation template."""

    name: str
    namespace: str = ""
    actions: dict[str, BlueprintAction] = field(default_factory=dict)

    @property
    def ref(self) -> ObjectReference:
        return ObjectReference(
            name=self.name,
            namespace=self.namespace,
            resource=BLUEPRINT_RESOURCE,
            group=API_GROUP,
            api_version=API_VERSION,
        )

    def get_action(self, name: str) -> BlueprintAction | None:
        return self.actions.get(name)


# =============================================================================
# ActionSet
# =============================================================================


@dataclass
class ActionSpec:
    """A concrete request to run one BlueprintAction against one object."""

    name: str
    blueprint: str
    object: ObjectReference
    config_maps: dict[str, ObjectReference] = field(default_factory=dict)
    secrets: dict[str, ObjectReference] = field(default_factory=dict)
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    profile: ObjectReference | None = None
    options: dict[str, str] = field(default_factory=dict)


@dataclass
class Phase:
    """Runtime record of one phase."""

    name: str
    func: str = ""
    state: PhaseState = PhaseState.PENDING
    args: dict[str, str] | None = None
    output: dict[str, str] = field(default_factory=dict)
    error: ErrorInfo | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition_to(self, target: PhaseState) -> None:
        validate_phase_transition(self.state, target)
        self.state = target
        if target == PhaseState.RUNNING:
            self.started_at = utcnow()
        else:
            self.completed_at = utcnow()

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "name": self.name,
            "func": self.func,
            "state": self.state.value,
            "args": self.args,
            "output": dict(self.output),
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ActionStatus:
    """Runtime record of one ActionSpec's execution."""

    name: str
    blueprint: str
    object: ObjectReference
    state: ActionState = ActionState.PENDING
    phases: list[Phase] = field(default_factory=list)
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    error: ErrorInfo | None = None

    @classmethod
    def pending_for(
        cls, spec: ActionSpec, blueprint_action: BlueprintAction | None = None
    ) -> ActionStatus:
        """Initial status: every declared phase pending."""
        phases = [
            Phase(name=p.name, func=p.func)
            for p in (blueprint_action.phases if blueprint_action else [])
        ]
        return cls(
            name=spec.name,
            blueprint=spec.blueprint,
            object=spec.object,
            phases=phases,
        )

    def transition_to(self, target: ActionState) -> None:
        validate_action_transition(self.state, target)
        self.state = target

    def phase(self, name: str) -> Phase | None:
        for p in self.phases:
            if p.name == name:
                return p
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "blueprint": self.blueprint,
            "object": self.object.to_dict(),
            "state": self.state.value,
            "phases": [p.to_dict() for p in self.phases],
            "artifacts": {k: a.to_dict() for k, a in self.artifacts.items()},
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ActionSetSpec:
    """Desired actions."""

    actions: list[ActionSpec] = field(default_factory=list)


@dataclass
class ActionSetStatus:
    """Observed state: one ActionStatus per ActionSpec, same order."""

    state: ActionSetState = ActionSetState.PENDING
    actions: list[ActionStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass
class ActionSet:
    """Top-level request/result object."""

    name: str
    namespace: str = ""
    spec: ActionSetSpec = field(default_factory=ActionSetSpec)
    status: ActionSetStatus | None = None

    @property
    def ref(self) -> ObjectReference:
        return ObjectReference(
            name=self.name,
            namespace=self.namespace,
            resource=ACTIONSET_RESOURCE,
            group=API_GROUP,
            api_version=API_VERSION,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "actions": [
                {"name": a.name, "blueprint": a.blueprint, "object": a.object.to_dict()}
                for a in self.spec.actions
            ],
            "status": self.status.to_dict() if self.status else None,
        }


def actionset_ref(name: str, namespace: str = "") -> ObjectReference:
    """Reference to an ActionSet by name."""
    return ObjectReference(
        name=name,
        namespace=namespace,
        resource=ACTIONSET_RESOURCE,
        group=API_GROUP,
        api_version=API_VERSION,
    )


def blueprint_ref(name: str, namespace: str = "") -> ObjectReference:
    """Reference to a Blueprint by name."""
    return ObjectReference(
        name=name,
        namespace=namespace,
        resource=BLUEPRINT_RESOURCE,
        group=API_GROUP,
        api_version=API_VERSION,
    )


def profile_ref(name: str, namespace: str = "") -> ObjectReference:
    return ObjectReference(
        name=name,
        namespace=namespace,
        resource=PROFILE_RESOURCE,
        group=API_GROUP,
        api_version=API_VERSION,
    )


def configmap_ref(name: str, namespace: str = "") -> ObjectReference:
    return ObjectReference(name=name, namespace=namespace, resource=CONFIGMAP_RESOURCE, api_version="v1")


def secret_ref(name: str, namespace: str = "") -> ObjectReference:
    return ObjectReference(name=name, namespace=namespace, resource=SECRET_RESOURCE, api_version="v1")
