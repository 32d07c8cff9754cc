"""Tests for the HTTP surface: liveness, metrics and ActionSet status."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from kanopy import __version__
from kanopy.api.app import create_app
from kanopy.cr.models import ActionSetState, ActionSetStatus
from kanopy.observability.metrics import EngineMetrics, MetricsRegistry

from _support.builders import action_spec, actionset


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def client(store, settings, registry, metrics_registry):
    app = create_app(store=store, settings=settings, registry=registry, metrics=metrics_registry)
    with TestClient(app) as client:
        yield client


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/v0/healthz")
        assert response.status_code == 200
        assert response.json() == {"alive": True, "version": __version__}


class TestMetrics:
    def test_prometheus_text(self, client, metrics_registry):
        EngineMetrics(metrics_registry).actionsets.labels(state="complete").inc()
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'kanopy_actionsets_total{state="complete"} 1.0' in response.text

    def test_empty_registry(self, client):
        assert client.get("/metrics").text == ""


class TestActionSetStatus:
    def test_not_found(self, client):
        response = client.get("/v0/actionsets/prod/ghost")
        assert response.status_code == 404
        assert "ghost" in response.json()["detail"]

    def test_returns_status_and_version(self, client, store):
        aset = actionset("nightly", action_spec())
        aset.status = ActionSetStatus(state=ActionSetState.COMPLETE)
        stored = store.create(aset.ref, aset)

        response = client.get("/v0/actionsets/prod/nightly")

        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "nightly"
        assert body["status"]["state"] == "complete"
        assert body["resource_version"] == stored.version
        assert body["actions"][0]["object"]["name"] == "db-0"


class TestControllerLifespan:
    def test_controller_runs_with_app(self, store, settings, registry, metrics_registry):
        app = create_app(
            store=store, settings=settings, registry=registry, metrics=metrics_registry,
            run_controller=True,
        )
        with TestClient(app) as client:
            assert app.state.controller.running
            assert client.get("/v0/healthz").status_code == 200
        assert not app.state.controller.running
