"""Custom resources: Blueprint, ActionSet and the objects they bind to."""

from kanopy.cr.models import (
    ActionSet,
    ActionSetSpec,
    ActionSetState,
    ActionSetStatus,
    ActionSpec,
    ActionState,
    ActionStatus,
    Artifact,
    Blueprint,
    BlueprintAction,
    BlueprintPhase,
    ConfigMap,
    ErrorInfo,
    ObjectReference,
    Phase,
    PhaseState,
    Profile,
    Secret,
    TargetObject,
    actionset_ref,
    blueprint_ref,
)

__all__ = [
    "ActionSet",
    "ActionSetSpec",
    "ActionSetState",
    "ActionSetStatus",
    "ActionSpec",
    "ActionState",
    "ActionStatus",
    "Artifact",
    "Blueprint",
    "BlueprintAction",
    "BlueprintPhase",
    "ConfigMap",
    "ErrorInfo",
    "ObjectReference",
    "Phase",
    "PhaseState",
    "Profile",
    "Secret",
    "TargetObject",
    "actionset_ref",
    "blueprint_ref",
]
