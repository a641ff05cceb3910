"""
Shared pytest fixtures for the stampede test suite.

Fixtures hand out fresh engine components (aggregators, pools,
registries) configured with :class:`TestingConfig`, whose short
scheduling intervals keep executor tests to fractions of a second.

Key Concepts Demonstrated:
- Fixture scopes (function, session)
- Factory fixtures for scenario documents and executors
- A live HTTP server in a daemon thread for end-to-end workload tests
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import yaml
from werkzeug.serving import make_server

# Select the testing configuration before any stampede import reads it
os.environ.setdefault("STAMPEDE_ENV", "testing")

from stampede.config import TestingConfig
from stampede.executors import Executor, ExecutorStats, executor_for
from stampede.metrics import MetricsAggregator, MetricsSnapshot
from stampede.scenario import RunPlan, ScenarioRegistry, ScenarioSpec
from stampede.shared import SharedPools
from stampede.workload import WorkloadInvoker
from tests.mocks.event_api import create_app


# -----------------------------------------------------------------------------
# Engine Component Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def settings() -> type[TestingConfig]:
    """Engine configuration with test-sized intervals."""
    return TestingConfig


@pytest.fixture
def aggregator() -> MetricsAggregator:
    """Fresh, seeded metrics aggregator."""
    return MetricsAggregator(TestingConfig.RESERVOIR_SIZE, seed=1)


@pytest.fixture
def shared_pools() -> SharedPools:
    """Empty shared pool registry with a small default capacity."""
    return SharedPools(default_capacity=10)


@pytest.fixture
def registry() -> ScenarioRegistry:
    """
    Scenario registry isolated from the process environment.

    Passing an empty ``environ`` keeps stray ``STAMPEDE__`` variables on
    the developer's machine from leaking into tests.
    """
    return ScenarioRegistry(TestingConfig, environ={})


# -----------------------------------------------------------------------------
# Scenario Factory Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def scenario_file(tmp_path: Path) -> Callable[..., Path]:
    """
    Factory fixture that writes a scenario document to a temp file.

    Example:
        def test_something(scenario_file):
            path = scenario_file({"vus": 1, "duration": "1s", "exec": "tests.workloads:instant"})
    """
    counter = {"n": 0}

    def _write(document: dict[str, Any] | str, name: str | None = None) -> Path:
        counter["n"] += 1
        path = tmp_path / (name or f"scenario_{counter['n']}.yml")
        text = document if isinstance(document, str) else yaml.safe_dump(document, sort_keys=False)
        path.write_text(text, encoding="utf-8")
        return path

    return _write


class ExecutorRun:
    """Result of :func:`run_scenario`: the executor, its stats and metrics."""

    def __init__(self, executor: Executor, stats: ExecutorStats, snapshot: MetricsSnapshot) -> None:
        self.executor = executor
        self.stats = stats
        self.snapshot = snapshot

    def counter(self, name: str, **tags: str) -> float:
        summary = self.snapshot.get(name, tags or None)
        return 0 if summary is None else summary.values["count"]


@pytest.fixture
def build_executor(
    registry: ScenarioRegistry,
    aggregator: MetricsAggregator,
    shared_pools: SharedPools,
) -> Callable[..., Executor]:
    """
    Factory fixture compiling a one-scenario document into an executor.

    The executor shares the test's ``aggregator`` and ``shared_pools``.
    """

    def _build(
        document: dict[str, Any],
        stop_event: threading.Event | None = None,
        env: dict[str, str] | None = None,
    ) -> Executor:
        plan: RunPlan = registry.compile(document)
        spec: ScenarioSpec = plan.scenarios[0]
        invoker = WorkloadInvoker(
            spec.name,
            spec.workload,
            pools=shared_pools,
            tags=spec.tags,
            env={**plan.env, **(env or {})},
            iteration_timeout=spec.iteration_timeout,
        )
        return executor_for(spec.executor)(
            spec,
            invoker=invoker,
            aggregator=aggregator,
            settings=TestingConfig,
            stop_event=stop_event,
        )

    return _build


@pytest.fixture
def run_scenario(
    build_executor: Callable[..., Executor],
    aggregator: MetricsAggregator,
) -> Callable[..., ExecutorRun]:
    """Factory fixture that builds, runs and snapshots one scenario."""

    def _run(document: dict[str, Any], **kwargs: Any) -> ExecutorRun:
        executor = build_executor(document, **kwargs)
        aggregator.start()
        stats = executor.run()
        return ExecutorRun(executor, stats, aggregator.snapshot())

    return _run


# -----------------------------------------------------------------------------
# Live Server Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def event_api_app():
    """Mock event API application shared by the session."""
    return create_app(event_count=5, preloaded_users=20)


@pytest.fixture(scope="session")
def event_api_url(event_api_app) -> Generator[str, None, None]:
    """
    Serve the mock event API from a background thread.

    Binding to port 0 lets the OS pick a free port, so parallel test
    runs never collide.

    Yields:
        str: API root, e.g. ``http://127.0.0.1:54321/api``.
    """
    server = make_server("127.0.0.1", 0, event_api_app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    yield f"http://127.0.0.1:{server.server_port}/api"

    server.shutdown()
