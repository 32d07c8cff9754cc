"""Liveness endpoint shared by every kanopy HTTP surface.

``GET /v0/healthz`` answers ``{"alive": true, "version": "..."}`` as long
as the process can serve requests.  It performs no dependency checks; a
controller that can answer is alive.
"""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

HEALTH_PATH = "/v0/healthz"


class HealthInfo(BaseModel):
    """Liveness payload."""

    alive: bool
    version: str


def create_health_router(version: str, path: str = HEALTH_PATH) -> APIRouter:
    """Router exposing the liveness endpoint at *path*."""
    router = APIRouter(tags=["health"])

    @router.get(path, response_model=HealthInfo)
    async def healthz() -> HealthInfo:
        return HealthInfo(alive=True, version=version)

    return router
