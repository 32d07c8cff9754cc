"""
FastAPI application factory.

``create_app()`` wires the health router, the Prometheus metrics endpoint
and the read-only ActionSet status endpoint into a single ``FastAPI``
instance.  When ``run_controller`` is set, the lifespan also starts a
:class:`~kanopy.engine.controller.Controller` over the same store.

Manifesto:
    The app factory is the single composition root for the HTTP surface.
    Handlers only read from the store; every write happens in the engine.

Tags:
    kanopy, api, app-factory, health, metrics

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from kanopy import __version__
from kanopy.api.health import create_health_router
from kanopy.core.errors import ObjectNotFoundError
from kanopy.core.logging import get_logger
from kanopy.core.settings import EngineSettings, get_settings
from kanopy.cr.models import ActionSet, actionset_ref
from kanopy.functions.registry import FunctionRegistry
from kanopy.observability.metrics import MetricsRegistry, get_metrics_registry
from kanopy.store.base import ObjectStore
from kanopy.store.memory import InMemoryObjectStore

logger = get_logger("kanopy.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start/stop the controller when requested."""
    logger.info("api.starting", version=app.version)
    controller = None
    if app.state.run_controller:
        from kanopy.engine.controller import Controller  # noqa: PLC0415

        controller = Controller(
            app.state.store, registry=app.state.registry, settings=app.state.settings
        )
        controller.start()
    app.state.controller = controller
    try:
        yield
    finally:
        if controller is not None:
            controller.stop()
        logger.info("api.stopped")


def create_app(
    *,
    store: ObjectStore | None = None,
    settings: EngineSettings | None = None,
    registry: FunctionRegistry | None = None,
    metrics: MetricsRegistry | None = None,
    run_controller: bool = False,
) -> FastAPI:
    """Build and return a configured FastAPI application.

    Parameters
    ----------
    store : ObjectStore | None
        Store the status endpoint reads from (a fresh in-memory store when
        ``None``).
    settings : EngineSettings | None
        Override settings (useful for testing).
    registry : FunctionRegistry | None
        Function registry handed to the controller.
    metrics : MetricsRegistry | None
        Registry exported at ``/metrics``.
    run_controller : bool
        Start a reconcile loop for the lifetime of the app.
    """
    settings = settings or get_settings()
    app = FastAPI(title="kanopy", version=__version__, lifespan=lifespan)

    app.state.settings = settings
    app.state.store = store if store is not None else InMemoryObjectStore()
    app.state.registry = registry
    app.state.run_controller = run_controller
    metrics_registry = metrics or get_metrics_registry()

    app.include_router(create_health_router(__version__))

    @app.get("/metrics", tags=["observability"], response_class=PlainTextResponse)
    async def metrics_endpoint() -> str:
        """Prometheus text exposition of engine metrics."""
        return metrics_registry.export_prometheus()

    @app.get("/v0/actionsets/{namespace}/{name}", tags=["actionsets"])
    async def get_actionset(namespace: str, name: str, request: Request) -> dict[str, Any]:
        """Stored ActionSet with its status, for diagnosis."""
        try:
            stored = request.app.state.store.get(actionset_ref(name, namespace))
        except ObjectNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        actionset: ActionSet = stored.obj
        return {**actionset.to_dict(), "resource_version": stored.version}

    return app
