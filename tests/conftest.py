"""Shared pytest fixtures for the llm-drivers test suite."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable

import pytest

from drivers.registry import DriverRegistry
from policies import HealthCheckPolicy, RestartPolicy
from telemetry import DispatchTelemetry


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer environment overrides out of the tests."""
    for name in ("LLMDRIVERS_CONFIG", "LLMDRIVERS_DISPATCH_TIMEOUT", "LLMDRIVERS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def registry() -> DriverRegistry:
    return DriverRegistry()


@pytest.fixture
def telemetry() -> DispatchTelemetry:
    return DispatchTelemetry()


@pytest.fixture
def fast_health() -> HealthCheckPolicy:
    return HealthCheckPolicy(base_delay=0.001, max_delay=0.002, max_attempts=3, probe_timeout=0.1)


@pytest.fixture
def restart_policy() -> RestartPolicy:
    return RestartPolicy(max_restarts=2, window_seconds=60.0, restart_on_exit=True)


@pytest.fixture
def write_config(tmp_path) -> Callable[[str], Path]:
    """Write a dedented TOML document to a temporary config file."""

    def factory(body: str, name: str = "config.toml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
        return path

    return factory
