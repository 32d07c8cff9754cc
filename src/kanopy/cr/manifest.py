"""Pydantic models for Kubernetes-style YAML manifests.

Parses the documents an operator writes (Blueprints, ActionSets and the
ConfigMaps, Secrets, Profiles and target objects they bind to) into the
dataclasses in :mod:`kanopy.cr.models`, and loads them into a store.

Usage::

    from kanopy.cr.manifest import apply_manifests, from_yaml_file

    objects = from_yaml_file("examples/backup.yaml")
    apply_manifests(store, objects)

Example YAML::

    apiVersion: cr.kanopy.io/v1alpha1
    kind: Blueprint
    metadata:
      name: postgres-bp
      namespace: prod
    actions:
      backup:
        kind: StatefulSet
        outputArtifacts:
          cloudObject:
            keyValue:
              snapshot: "{{ .Phases.snapshot.Output.snapshotId }}"
        phases:
          - name: snapshot
            func: CreateSnapshot
            args: ["{{ .Object.Name }}"]
          - name: upload
            func: Upload
            args:
              snapshot: "{{ .Phases.snapshot.Output.snapshotId }}"
    ---
    apiVersion: cr.kanopy.io/v1alpha1
    kind: ActionSet
    metadata:
      name: nightly
      namespace: prod
    spec:
      actions:
        - name: backup
          blueprint: postgres-bp
          object:
            kind: StatefulSet
            apiVersion: apps/v1
            name: db-0

Phase ``args`` may be a mapping or a list; list entries are keyed by
their position (``"0"``, ``"1"``, ...).

Any ``kind`` that is not one of the engine's own becomes a
:class:`~kanopy.cr.models.TargetObject` stored under its plural resource
name (``StatefulSet`` → ``statefulsets``).

Manifesto:
    Operators describe operations and their invocations declaratively.
    The same document set that would be applied to a cluster can be
    loaded into an in-memory store and executed locally.

Tags:
    kanopy, manifests, yaml, pydantic, declarative

Doc-Types:
    api-reference
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from kanopy.core.errors import ConfigurationError
from kanopy.core.logging import get_logger
from kanopy.cr.models import (
    ACTIONSET_RESOURCE,
    API_GROUP,
    CONFIGMAP_RESOURCE,
    PROFILE_RESOURCE,
    SECRET_RESOURCE,
    ActionSet,
    ActionSetSpec,
    ActionSpec,
    Artifact,
    Blueprint,
    BlueprintAction,
    BlueprintPhase,
    ConfigMap,
    ObjectReference,
    Profile,
    Secret,
    TargetObject,
    actionset_ref,
    blueprint_ref,
    configmap_ref,
    profile_ref,
    secret_ref,
)
from kanopy.store.base import ObjectStore

logger = get_logger(__name__)

DEFAULT_NAMESPACE = "default"

_STRICT = ConfigDict(extra="forbid", populate_by_name=True)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    return str(value)


def split_api_version(api_version: str) -> tuple[str, str]:
    """``apps/v1`` → (``apps``, ``v1``); ``v1`` → (``""``, ``v1``)."""
    if "/" in api_version:
        group, _, version = api_version.partition("/")
        return group, version
    return "", api_version


def resource_for_kind(kind: str) -> str:
    """Plural, lower-case resource name for a kind."""
    lower = kind.lower()
    if lower.endswith("s"):
        return lower + "es"
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
        return lower[:-1] + "ies"
    return lower + "s"


# =============================================================================
# Shared sections
# =============================================================================


class MetadataSpec(BaseModel):
    """``metadata`` section. Labels and annotations are accepted and ignored."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    namespace: str = Field(default="")


class ObjectRefSpec(BaseModel):
    """Reference to any object (``kind`` or ``resource`` names its type)."""

    model_config = _STRICT

    name: str = Field(..., min_length=1)
    namespace: str = Field(default="")
    kind: str = Field(default="")
    resource: str = Field(default="")
    group: str = Field(default="")
    api_version: str = Field(default="", alias="apiVersion")

    def to_ref(self, default_resource: str = "") -> ObjectReference:
        group, version = split_api_version(self.api_version)
        resource = self.resource or (resource_for_kind(self.kind) if self.kind else default_resource)
        return ObjectReference(
            name=self.name,
            namespace=self.namespace,
            resource=resource,
            group=self.group or group,
            api_version=version,
        )


class ArtifactSpec(BaseModel):
    model_config = _STRICT

    key_value: dict[str, Any] = Field(default_factory=dict, alias="keyValue")

    def to_artifact(self) -> Artifact:
        return Artifact({k: _stringify(v) for k, v in self.key_value.items()})


# =============================================================================
# Blueprint
# =============================================================================


class PhaseSpec(BaseModel):
    """One phase: ``func`` plus templated ``args`` (mapping or list)."""

    model_config = _STRICT

    name: str = Field(..., min_length=1)
    func: str = Field(..., min_length=1)
    args: dict[str, Any] | list[Any] = Field(default_factory=dict)

    def ordered_args(self) -> dict[str, str]:
        if isinstance(self.args, list):
            return {str(i): _stringify(v) for i, v in enumerate(self.args)}
        return {str(k): _stringify(v) for k, v in self.args.items()}


class BlueprintActionSpec(BaseModel):
    model_config = _STRICT

    kind: str = Field(default="")
    phases: list[PhaseSpec] = Field(default_factory=list)
    config_map_names: list[str] = Field(default_factory=list, alias="configMapNames")
    secret_names: list[str] = Field(default_factory=list, alias="secretNames")
    input_artifact_names: list[str] = Field(default_factory=list, alias="inputArtifactNames")
    output_artifacts: dict[str, ArtifactSpec] = Field(default_factory=dict, alias="outputArtifacts")

    @field_validator("phases")
    @classmethod
    def validate_unique_names(cls, v: list[PhaseSpec]) -> list[PhaseSpec]:
        names = [p.name for p in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate phase names: {duplicates}")
        return v

    def to_action(self, name: str) -> BlueprintAction:
        return BlueprintAction(
            name=name,
            kind=self.kind,
            phases=[BlueprintPhase(name=p.name, func=p.func, args=p.ordered_args()) for p in self.phases],
            config_map_names=list(self.config_map_names),
            secret_names=list(self.secret_names),
            input_artifact_names=list(self.input_artifact_names),
            output_artifacts={
                n: {k: _stringify(v) for k, v in a.key_value.items()}
                for n, a in self.output_artifacts.items()
            },
        )


class BlueprintManifest(BaseModel):
    model_config = _STRICT

    api_version: str = Field(default=f"{API_GROUP}/v1alpha1", alias="apiVersion")
    kind: str = Field(default="Blueprint")
    metadata: MetadataSpec
    actions: dict[str, BlueprintActionSpec] = Field(default_factory=dict)

    def to_model(self, default_namespace: str) -> tuple[ObjectReference, Blueprint]:
        namespace = self.metadata.namespace or default_namespace
        blueprint = Blueprint(
            name=self.metadata.name,
            namespace=namespace,
            actions={name: a.to_action(name) for name, a in self.actions.items()},
        )
        return blueprint_ref(blueprint.name, namespace), blueprint


# =============================================================================
# ActionSet
# =============================================================================


class ActionSpecSpec(BaseModel):
    """One entry of ``spec.actions``."""

    model_config = _STRICT

    name: str = Field(..., min_length=1)
    blueprint: str = Field(..., min_length=1)
    object: ObjectRefSpec
    config_maps: dict[str, ObjectRefSpec] = Field(default_factory=dict, alias="configMaps")
    secrets: dict[str, ObjectRefSpec] = Field(default_factory=dict)
    artifacts: dict[str, ArtifactSpec] = Field(default_factory=dict)
    profile: ObjectRefSpec | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    def to_spec(self, namespace: str) -> ActionSpec:
        return ActionSpec(
            name=self.name,
            blueprint=self.blueprint,
            object=self.object.to_ref().with_defaults(namespace=namespace),
            config_maps={
                role: r.to_ref(CONFIGMAP_RESOURCE).with_defaults(namespace=namespace)
                for role, r in self.config_maps.items()
            },
            secrets={
                role: r.to_ref(SECRET_RESOURCE).with_defaults(namespace=namespace)
                for role, r in self.secrets.items()
            },
            artifacts={n: a.to_artifact() for n, a in self.artifacts.items()},
            profile=(
                self.profile.to_ref(PROFILE_RESOURCE).with_defaults(namespace=namespace, group=API_GROUP)
                if self.profile
                else None
            ),
            options={k: _stringify(v) for k, v in self.options.items()},
        )


class ActionSetSpecSection(BaseModel):
    model_config = _STRICT

    actions: list[ActionSpecSpec] = Field(default_factory=list)


class ActionSetManifest(BaseModel):
    """ActionSet document. A ``status`` section, if present, is ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(default=f"{API_GROUP}/v1alpha1", alias="apiVersion")
    kind: str = Field(default="ActionSet")
    metadata: MetadataSpec
    spec: ActionSetSpecSection = Field(default_factory=ActionSetSpecSection)

    def to_model(self, default_namespace: str) -> tuple[ObjectReference, ActionSet]:
        namespace = self.metadata.namespace or default_namespace
        actionset = ActionSet(
            name=self.metadata.name,
            namespace=namespace,
            spec=ActionSetSpec(actions=[a.to_spec(namespace) for a in self.spec.actions]),
        )
        return actionset_ref(actionset.name, namespace), actionset


# =============================================================================
# Bound objects
# =============================================================================


class ConfigMapManifest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = Field(default="ConfigMap")
    metadata: MetadataSpec
    data: dict[str, Any] = Field(default_factory=dict)

    def to_model(self, default_namespace: str) -> tuple[ObjectReference, ConfigMap]:
        namespace = self.metadata.namespace or default_namespace
        cm = ConfigMap(
            name=self.metadata.name,
            namespace=namespace,
            data={k: _stringify(v) for k, v in self.data.items()},
        )
        return configmap_ref(cm.name, namespace), cm


class SecretManifest(BaseModel):
    """Secret document: ``data`` is base64, ``stringData`` is taken verbatim."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = Field(default="Secret")
    metadata: MetadataSpec
    type: str = Field(default="Opaque")
    data: dict[str, str] = Field(default_factory=dict)
    string_data: dict[str, Any] = Field(default_factory=dict, alias="stringData")

    @field_validator("data")
    @classmethod
    def decode_data(cls, v: dict[str, str]) -> dict[str, str]:
        decoded = {}
        for key, value in v.items():
            try:
                decoded[key] = base64.b64decode(value, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ValueError(f"data.{key} is not valid base64: {e}") from e
        return decoded

    def to_model(self, default_namespace: str) -> tuple[ObjectReference, Secret]:
        namespace = self.metadata.namespace or default_namespace
        data = dict(self.data)
        data.update({k: _stringify(v) for k, v in self.string_data.items()})
        secret = Secret(name=self.metadata.name, namespace=namespace, type=self.type, data=data)
        return secret_ref(secret.name, namespace), secret


class ProfileManifest(BaseModel):
    model_config = _STRICT

    api_version: str = Field(default=f"{API_GROUP}/v1alpha1", alias="apiVersion")
    kind: str = Field(default="Profile")
    metadata: MetadataSpec
    location: dict[str, Any] = Field(default_factory=dict)
    credential: dict[str, Any] = Field(default_factory=dict)

    def to_model(self, default_namespace: str) -> tuple[ObjectReference, Profile]:
        namespace = self.metadata.namespace or default_namespace
        profile = Profile(
            name=self.metadata.name,
            namespace=namespace,
            location={k: _stringify(v) for k, v in self.location.items()},
            credential={k: _stringify(v) for k, v in self.credential.items()},
        )
        return profile_ref(profile.name, namespace), profile


class GenericManifest(BaseModel):
    """Any other kind; kept whole as the body of a ``TargetObject``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_version: str = Field(..., alias="apiVersion")
    kind: str = Field(..., min_length=1)
    metadata: MetadataSpec

    @model_validator(mode="after")
    def reject_engine_kinds(self) -> GenericManifest:
        if self.kind in MANIFEST_KINDS:
            raise ValueError(f"kind {self.kind} must be parsed with its own model")
        return self

    def to_model(self, default_namespace: str) -> tuple[ObjectReference, TargetObject]:
        group, version = split_api_version(self.api_version)
        ref = ObjectReference(
            name=self.metadata.name,
            namespace=self.metadata.namespace or default_namespace,
            resource=resource_for_kind(self.kind),
            group=group,
            api_version=version,
        )
        return ref, TargetObject(ref=ref, body=dict(self.model_extra or {}))


MANIFEST_KINDS: dict[str, type[BaseModel]] = {
    "Blueprint": BlueprintManifest,
    "ActionSet": ActionSetManifest,
    "ConfigMap": ConfigMapManifest,
    "Secret": SecretManifest,
    "Profile": ProfileManifest,
}


# =============================================================================
# Loading
# =============================================================================


@dataclass(frozen=True)
class LoadedObject:
    """One parsed manifest document."""

    kind: str
    ref: ObjectReference
    obj: Any


def parse_manifest(data: Any, *, default_namespace: str = DEFAULT_NAMESPACE) -> LoadedObject:
    """Validate one decoded document.

    Raises:
        ConfigurationError: The document is not a mapping, has no ``kind`` or
            does not match its schema.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Manifest must be a mapping, got {type(data).__name__}")
    kind = data.get("kind")
    if not kind:
        raise ConfigurationError("Manifest has no kind")
    model = MANIFEST_KINDS.get(kind, GenericManifest)
    try:
        manifest = model.model_validate(data)
    except ValidationError as e:
        name = (data.get("metadata") or {}).get("name", "?")
        raise ConfigurationError(f"Invalid {kind} '{name}': {e}", cause=e) from e
    ref, obj = manifest.to_model(default_namespace)
    return LoadedObject(kind=kind, ref=ref, obj=obj)


def from_yaml(content: str, *, default_namespace: str = DEFAULT_NAMESPACE) -> list[LoadedObject]:
    """Parse every document of a (multi-document) YAML string."""
    try:
        documents = [d for d in yaml.safe_load_all(content) if d is not None]
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}", cause=e) from e
    return [parse_manifest(d, default_namespace=default_namespace) for d in documents]


def from_yaml_file(path: str | Path, *, default_namespace: str = DEFAULT_NAMESPACE) -> list[LoadedObject]:
    content = Path(path).read_text(encoding="utf-8")
    return from_yaml(content, default_namespace=default_namespace)


def apply_manifests(store: ObjectStore, objects: list[LoadedObject]) -> list[ObjectReference]:
    """Create or replace *objects* in *store*.

    ActionSets are applied last so that every object they bind to exists
    when the first reconcile runs.
    """
    ordered = sorted(objects, key=lambda o: o.ref.resource == ACTIONSET_RESOURCE)
    refs = []
    for loaded in ordered:
        apply = getattr(store, "apply", None)
        if apply is not None:
            apply(loaded.ref, loaded.obj)
        else:
            store.create(loaded.ref, loaded.obj)
        logger.debug("manifest.applied", kind=loaded.kind, ref=str(loaded.ref))
        refs.append(loaded.ref)
    return refs
