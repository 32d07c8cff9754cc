"""
Centralized settings for the kanopy engine.

Manifesto:
    One validated, cached settings object for every tunable the engine
    exposes: worker pool sizes, the status-write retry budget, logging.
    Values come from ``KANOPY_*`` environment variables or a ``.env`` file.

Tags:
    kanopy, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ActionExecution(str, Enum):
    """How the actions of one ActionSet are dispatched."""

    CONCURRENT = "concurrent"
    SEQUENTIAL = "sequential"


class EngineSettings(BaseSettings):
    """Kanopy engine configuration.

    All fields can be set via ``KANOPY_*`` environment variables (e.g.
    ``KANOPY_MAX_ACTION_WORKERS=8``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="KANOPY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console", description="json or console")

    # ── Action dispatch ──────────────────────────────────────────
    action_execution: ActionExecution = Field(default=ActionExecution.CONCURRENT)
    max_action_workers: int = Field(default=4, ge=1, description="Worker pool size per ActionSet")
    phase_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Optional deadline applied to every phase execution",
    )

    # ── Status persistence ───────────────────────────────────────
    status_update_retries: int = Field(default=5, ge=1, description="CAS attempts per status write")
    status_retry_base_delay: float = Field(default=0.01, ge=0, description="Backoff base in seconds")

    # ── Controller loop ──────────────────────────────────────────
    controller_workers: int = Field(default=2, ge=1, description="ActionSets reconciled in parallel")
    event_max_redeliveries: int = Field(default=3, ge=0)

    # ── API ──────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Cached settings: loaded once per process."""
    return EngineSettings()


__all__ = ["ActionExecution", "EngineSettings", "get_settings"]
