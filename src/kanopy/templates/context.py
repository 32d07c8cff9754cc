"""Template context: the read-only data tree templates are rendered against.

Manifesto:
A phase argument like ``{{ .Phases.snapshot.Output.snapshotId }}`` is a
path into a tree that the engine assembles from the action's bindings.
The tree is built once per action, frozen, and then only ever *extended*
(one entry per successful phase) by producing a new context.  Nothing
downstream can mutate what an earlier phase saw.

ARCHITECTURE
────────────
::

    build_context(spec, config_maps=..., secrets=..., profile=..., now=...)
      └── TemplateContext (immutable)
            ├── Object            Name Namespace Group APIVersion Resource
            ├── ConfigMaps.<role> Name Namespace Data.<key>
            ├── Secrets.<role>    Name Namespace Type Data.<key>
            ├── ArtifactsIn.<n>   KeyValue.<key>
            ├── Profile           Name Namespace Location.* Credential.*
            ├── Options.<key>
            ├── Namespace
            ├── Time
            └── Phases.<phase>    Output.<key>      (grows)

    .with_phase_output(phase, output)  → new TemplateContext
    .lookup("Phases.snapshot.Output.snapshotId")

Values are exactly one of: ``str``, ``Mapping[str, Value]`` (read-only
proxy) or ``tuple[Value, ...]``.

Path segments match a key exactly first; otherwise a single
case-insensitive match is accepted, so ``.object.name`` and
``.Phases.x.output.y`` resolve as well.  Two keys that differ only in case
make the insensitive match ambiguous and the lookup fails.

Tags:
    kanopy, templates, context, immutable

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Union

from kanopy.core.errors import TemplateError
from kanopy.cr.models import (
    ActionSpec,
    Artifact,
    ConfigMap,
    Profile,
    Secret,
    TargetObject,
    utcnow,
)

Value = Union[str, Mapping[str, "Value"], tuple["Value", ...]]

_MISSING = object()


def freeze(value: Any) -> Value:
    """Convert plain Python data into the immutable value tree."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(freeze(v) for v in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`: plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def resolve_key(mapping: Mapping[str, Any], key: str, default: Any = _MISSING) -> Any:
    """Look *key* up exactly, then by a unique case-insensitive match."""
    if key in mapping:
        return mapping[key]
    folded = key.casefold()
    matches = [k for k in mapping if k.casefold() == folded]
    if len(matches) == 1:
        return mapping[matches[0]]
    if default is not _MISSING:
        return default
    if matches:
        raise TemplateError(f"ambiguous key '{key}': matches {', '.join(sorted(matches))}")
    raise KeyError(key)


class TemplateContext(Mapping[str, Value]):
    """Immutable root of the template value tree."""

    __slots__ = ("_root",)

    def __init__(self, data: Mapping[str, Any] | None = None):
        root = freeze(data or {})
        assert isinstance(root, Mapping)
        self._root: Mapping[str, Value] = root

    @property
    def root(self) -> Mapping[str, Value]:
        return self._root

    def __getitem__(self, key: str) -> Value:
        return self._root[key]

    def __iter__(self):
        return iter(self._root)

    def __len__(self) -> int:
        return len(self._root)

    def lookup(self, path: str | Iterable[str]) -> Value:
        """Resolve a dotted path (leading dot optional).

        Raises:
            TemplateError: A segment is missing or traverses a non-mapping.
        """
        segments = [s for s in path.split(".") if s] if isinstance(path, str) else list(path)
        current: Any = self._root
        walked: list[str] = []
        for segment in segments:
            walked.append(segment)
            if not isinstance(current, Mapping):
                raise TemplateError(
                    f"can't evaluate field {segment} in .{'.'.join(walked[:-1])}: not a mapping"
                )
            try:
                current = resolve_key(current, segment)
            except KeyError:
                raise TemplateError(f"undefined path .{'.'.join(walked)}") from None
        return current

    def get_path(self, path: str, default: Any = None) -> Any:
        try:
            return self.lookup(path)
        except TemplateError:
            return default

    def with_phase_output(self, phase: str, output: Mapping[str, str]) -> TemplateContext:
        """New context with ``Phases.<phase>.Output`` set to *output*."""
        data = thaw(self._root)
        phases = data.setdefault("Phases", {})
        phases[phase] = {"Output": dict(output)}
        return TemplateContext(data)

    def to_dict(self) -> dict[str, Any]:
        return thaw(self._root)

    def __repr__(self) -> str:
        return f"TemplateContext(keys={sorted(self._root)!r})"


def _format_time(now: datetime) -> str:
    # Naive datetimes are taken as UTC.
    if now.tzinfo is not None:
        now = now.astimezone(UTC)
    return now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def build_context(
    spec: ActionSpec,
    *,
    namespace: str = "",
    target: TargetObject | None = None,
    config_maps: Mapping[str, ConfigMap] | None = None,
    secrets: Mapping[str, Secret] | None = None,
    artifacts: Mapping[str, Artifact] | None = None,
    profile: Profile | None = None,
    phase_outputs: Mapping[str, Mapping[str, str]] | None = None,
    now: datetime | None = None,
) -> TemplateContext:
    """Assemble the context for one action from its resolved bindings.

    Args:
        spec: The action being executed.
        namespace: Namespace of the owning ActionSet, used when the target
            reference carries none.
        target: The resolved target object, whose body is merged under
            ``Object`` next to the reference fields.
        config_maps: Resolved config maps keyed by role.
        secrets: Resolved secrets keyed by role.
        artifacts: Input artifacts keyed by name (defaults to ``spec.artifacts``).
        profile: Resolved profile, if the action binds one.
        phase_outputs: Outputs of phases that already succeeded.
        now: Timestamp exposed as ``Time``; captured once per action.
    """
    ref = spec.object
    obj: dict[str, Any] = dict(target.body) if target is not None else {}
    obj.update(
        {
            "Name": ref.name,
            "Namespace": ref.namespace or namespace,
            "Group": ref.group,
            "APIVersion": ref.api_version,
            "Resource": ref.resource,
        }
    )

    data: dict[str, Any] = {
        "Object": obj,
        "Namespace": ref.namespace or namespace,
        "Time": _format_time(now or utcnow()),
        "Options": dict(spec.options),
        "ConfigMaps": {
            role: {"Name": cm.name, "Namespace": cm.namespace, "Data": dict(cm.data)}
            for role, cm in (config_maps or {}).items()
        },
        "Secrets": {
            role: {
                "Name": s.name,
                "Namespace": s.namespace,
                "Type": s.type,
                "Data": dict(s.data),
            }
            for role, s in (secrets or {}).items()
        },
        "ArtifactsIn": {
            name: {"KeyValue": dict(a.key_values)}
            for name, a in (spec.artifacts if artifacts is None else artifacts).items()
        },
        "Phases": {
            name: {"Output": dict(out)} for name, out in (phase_outputs or {}).items()
        },
    }
    if profile is not None:
        data["Profile"] = {
            "Name": profile.name,
            "Namespace": profile.namespace,
            "Location": dict(profile.location),
            "Credential": dict(profile.credential),
        }
    return TemplateContext(data)
