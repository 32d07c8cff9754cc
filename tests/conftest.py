"""
Shared pytest fixtures for kanopy tests.

This module provides:
- Registry cleanup so every test starts with an empty default registry
- Fresh store, function registry, metrics and settings per test
- Auto-marking of tests by directory

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    def test_something(store, registry, settings):
        ...
"""

import sys
from pathlib import Path

import pytest

# Ensure kanopy package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from kanopy.core.context import ExecutionContext
from kanopy.core.settings import EngineSettings
from kanopy.functions.registry import FunctionRegistry, reset_default_registry
from kanopy.observability.metrics import EngineMetrics, MetricsRegistry
from kanopy.store.memory import InMemoryObjectStore


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        parts = test_path.parts
        if parts and parts[0] in ("engine", "cli", "api"):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_default_registry():
    """Empty global function registry before and after every test."""
    reset_default_registry()
    yield
    reset_default_registry()


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def registry() -> FunctionRegistry:
    return FunctionRegistry()


@pytest.fixture
def metrics() -> EngineMetrics:
    """Engine metrics bound to a private registry so counts start at zero."""
    return EngineMetrics(MetricsRegistry())


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        status_retry_base_delay=0.0,
        max_action_workers=4,
        controller_workers=2,
    )


@pytest.fixture
def exec_ctx() -> ExecutionContext:
    return ExecutionContext()
