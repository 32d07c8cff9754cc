"""Tests for the kanopy CLI commands."""

from __future__ import annotations

import json
import logging
import textwrap

import pytest
import structlog
from typer.testing import CliRunner

from kanopy import __version__
from kanopy.cli.app import app
from kanopy.core.errors import ExecutionError
from kanopy.functions.registry import register_function

runner = CliRunner()

MANIFEST = textwrap.dedent(
    """
    apiVersion: cr.kanopy.io/v1alpha1
    kind: Blueprint
    metadata:
      name: postgres-bp
    actions:
      backup:
        outputArtifacts:
          cloudObject:
            keyValue:
              snapshot: "{{ .Phases.snapshot.Output.snapshotId }}"
        phases:
          - name: snapshot
            func: CreateSnapshot
            args: ["{{ .Object.Name }}"]
    ---
    apiVersion: cr.kanopy.io/v1alpha1
    kind: ActionSet
    metadata:
      name: nightly
    spec:
      actions:
        - name: backup
          blueprint: postgres-bp
          object: {kind: StatefulSet, apiVersion: apps/v1, name: db-0}
    ---
    apiVersion: apps/v1
    kind: StatefulSet
    metadata:
      name: db-0
    """
)


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    structlog.reset_defaults()
    logging.basicConfig(force=True)


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "backup.yaml"
    path.write_text(MANIFEST, encoding="utf-8")
    return path


def _register_snapshot(fail: bool = False) -> None:
    @register_function("CreateSnapshot", description="Snapshot a workload")
    def create_snapshot(ctx, args):
        if fail:
            raise ExecutionError("snapshot quota exceeded")
        return {"snapshotId": f"snap-{args['0']}"}


class TestVersion:
    def test_version_command(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert f"kanopy {__version__}" in result.stdout

    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestFunctions:
    def test_lists_registered(self):
        _register_snapshot()
        result = runner.invoke(app, ["functions"])
        assert result.exit_code == 0
        assert "CreateSnapshot" in result.stdout

    def test_json(self):
        _register_snapshot()
        result = runner.invoke(app, ["--log-level", "WARNING", "functions", "--json"])
        assert result.exit_code == 0
        entries = json.loads(result.stdout)
        assert entries[0]["name"] == "CreateSnapshot"
        assert entries[0]["description"] == "Snapshot a workload"

    def test_empty(self):
        result = runner.invoke(app, ["functions"])
        assert result.exit_code == 0
        assert "No functions registered" in result.stdout

    def test_unknown_plugin(self):
        result = runner.invoke(app, ["functions", "--plugin", "kanopy_no_such_plugin"])
        assert result.exit_code == 2


class TestRun:
    def test_complete_run_exits_zero(self, manifest):
        _register_snapshot()
        result = runner.invoke(app, ["--log-level", "WARNING", "run", str(manifest), "--namespace", "prod"])
        assert result.exit_code == 0, result.output
        assert "complete" in result.stdout
        assert "snap-db-0" in result.stdout

    def test_json_output(self, manifest):
        _register_snapshot()
        result = runner.invoke(app, ["--log-level", "WARNING", "run", str(manifest), "--json", "--sequential"])
        assert result.exit_code == 0, result.output
        assert '"state": "complete"' in result.stdout
        assert '"snapshot": "snap-db-0"' in result.stdout

    def test_failed_actionset_exits_one(self, manifest):
        _register_snapshot(fail=True)
        result = runner.invoke(app, ["--log-level", "ERROR", "run", str(manifest), "--json"])
        assert result.exit_code == 1
        assert "snapshot quota exceeded" in result.stdout
        assert '"state": "failed"' in result.stdout

    def test_unregistered_function_fails_the_run(self, manifest):
        result = runner.invoke(app, ["--log-level", "ERROR", "run", str(manifest)])
        assert result.exit_code == 1
        assert "failed" in result.output

    def test_invalid_manifest_exits_two(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("kind: Blueprint\nmetadata: {name: b}\nactionz: {}\n", encoding="utf-8")
        result = runner.invoke(app, ["run", str(bad)])
        assert result.exit_code == 2

    def test_missing_file_is_usage_error(self, tmp_path):
        result = runner.invoke(app, ["run", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestServe:
    @pytest.fixture
    def started(self, monkeypatch):
        import uvicorn

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda api, **kwargs: calls.append((api, kwargs)))
        return calls

    def test_invalid_manifest_exits_two(self, tmp_path, started):
        bad = tmp_path / "bad.yaml"
        bad.write_text("kind: Blueprint\nmetadata: {name: b}\nactionz: {}\n", encoding="utf-8")
        result = runner.invoke(app, ["serve", str(bad)])
        assert result.exit_code == 2
        assert "Invalid Blueprint" in result.output
        assert started == []

    def test_preloads_manifests_and_starts(self, manifest, started):
        result = runner.invoke(app, ["serve", str(manifest), "--port", "9100"])
        assert result.exit_code == 0, result.output
        ((api, kwargs),) = started
        assert kwargs["port"] == 9100
        assert len(api.state.store) == 3
