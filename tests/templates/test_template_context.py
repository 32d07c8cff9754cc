"""Tests for the immutable template context and its builder."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from kanopy.core.errors import TemplateError
from kanopy.cr.models import (
    ActionSpec,
    Artifact,
    ConfigMap,
    ObjectReference,
    Profile,
    Secret,
    TargetObject,
)
from kanopy.templates.context import TemplateContext, build_context, freeze, resolve_key, thaw


def _spec(**kwargs) -> ActionSpec:
    return ActionSpec(
        name="backup",
        blueprint="B",
        object=ObjectReference(
            name="db-0", namespace="prod", resource="statefulsets", group="apps", api_version="v1"
        ),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Value tree
# ---------------------------------------------------------------------------


class TestFreeze:
    def test_scalars_become_strings(self):
        assert freeze(True) == "true"
        assert freeze(None) == ""
        assert freeze(3) == "3"

    def test_containers_are_read_only(self):
        frozen = freeze({"a": [1, {"b": False}]})
        assert frozen["a"] == ("1", {"b": "false"})
        with pytest.raises(TypeError):
            frozen["a"] = "x"  # type: ignore[index]

    def test_thaw_round_trip(self):
        data = {"a": ["1", {"b": "2"}]}
        assert thaw(freeze(data)) == data


class TestResolveKey:
    def test_exact_match_wins(self):
        assert resolve_key({"Name": "a", "name": "b"}, "name") == "b"

    def test_case_insensitive_fallback(self):
        assert resolve_key({"Output": "x"}, "output") == "x"

    def test_ambiguous_fallback_fails(self):
        with pytest.raises(TemplateError, match="ambiguous"):
            resolve_key({"Name": "a", "NAME": "b"}, "name")

    def test_missing_raises_key_error_or_default(self):
        with pytest.raises(KeyError):
            resolve_key({}, "x")
        assert resolve_key({}, "x", None) is None


# ---------------------------------------------------------------------------
# TemplateContext
# ---------------------------------------------------------------------------


class TestTemplateContext:
    def test_lookup_paths(self):
        ctx = TemplateContext({"Object": {"Name": "db-0"}})
        assert ctx.lookup(".Object.Name") == "db-0"
        assert ctx.lookup("object.name") == "db-0"
        assert ctx.lookup(["Object", "Name"]) == "db-0"

    def test_undefined_path(self):
        ctx = TemplateContext({"Object": {"Name": "db-0"}})
        with pytest.raises(TemplateError, match=r"undefined path \.Object\.Kind"):
            ctx.lookup("Object.Kind")

    def test_lookup_through_leaf_fails(self):
        ctx = TemplateContext({"Object": {"Name": "db-0"}})
        with pytest.raises(TemplateError, match="not a mapping"):
            ctx.lookup("Object.Name.First")

    def test_get_path_default(self):
        assert TemplateContext({}).get_path("Missing", "fallback") == "fallback"

    def test_with_phase_output_returns_new_context(self):
        ctx = TemplateContext({"Phases": {}})
        extended = ctx.with_phase_output("snapshot", {"snapshotId": "s-1"})
        assert extended.lookup("Phases.snapshot.Output.snapshotId") == "s-1"
        assert ctx.get_path("Phases.snapshot") is None


# ---------------------------------------------------------------------------
# build_context
# ---------------------------------------------------------------------------


class TestBuildContext:
    def test_object_fields_and_body(self):
        target = TargetObject(ref=_spec().object, body={"spec": {"replicas": 3}})
        ctx = build_context(_spec(), namespace="prod", target=target)
        assert ctx.lookup("Object.Name") == "db-0"
        assert ctx.lookup("Object.Namespace") == "prod"
        assert ctx.lookup("Object.Group") == "apps"
        assert ctx.lookup("Object.Resource") == "statefulsets"
        assert ctx.lookup("Object.spec.replicas") == "3"
        assert ctx.lookup("Namespace") == "prod"

    def test_namespace_falls_back_to_actionset(self):
        spec = ActionSpec(name="a", blueprint="B", object=ObjectReference(name="db-0"))
        ctx = build_context(spec, namespace="prod")
        assert ctx.lookup("Object.Namespace") == "prod"

    def test_bindings(self):
        spec = _spec(
            options={"mode": "full"},
            artifacts={"manifest": Artifact({"path": "s3://b/m"})},
        )
        ctx = build_context(
            spec,
            config_maps={"location": ConfigMap("loc", "prod", {"bucket": "b"})},
            secrets={"creds": Secret("aws", "prod", data={"key": "k"})},
            profile=Profile("p", "prod", location={"bucket": "pb"}, credential={"id": "i"}),
            phase_outputs={"snapshot": {"snapshotId": "s-1"}},
        )
        assert ctx.lookup("Options.mode") == "full"
        assert ctx.lookup("ArtifactsIn.manifest.KeyValue.path") == "s3://b/m"
        assert ctx.lookup("ConfigMaps.location.Data.bucket") == "b"
        assert ctx.lookup("ConfigMaps.location.Name") == "loc"
        assert ctx.lookup("Secrets.creds.Data.key") == "k"
        assert ctx.lookup("Secrets.creds.Type") == "Opaque"
        assert ctx.lookup("Profile.Location.bucket") == "pb"
        assert ctx.lookup("Profile.Credential.id") == "i"
        assert ctx.lookup("Phases.snapshot.Output.snapshotId") == "s-1"

    def test_profile_absent_when_unbound(self):
        assert build_context(_spec()).get_path("Profile") is None

    def test_time_is_utc(self):
        now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        ctx = build_context(_spec(), now=now)
        assert ctx.lookup("Time") == "2024-05-01T10:00:00.000000Z"

    def test_time_defaults_to_now(self):
        ctx = build_context(_spec())
        parsed = datetime.strptime(ctx.lookup("Time"), "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=UTC)
        assert abs((datetime.now(UTC) - parsed).total_seconds()) < 60
