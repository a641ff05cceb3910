"""
Run orchestration.

The :class:`Engine` takes a compiled :class:`RunPlan` and drives it from
start to verdict:

1. run the plan's ``setup`` hook (seeding shared pools)
2. start one executor thread per scenario
3. merge metric buffers every ``FLUSH_INTERVAL`` and check
   ``abortOnFail`` thresholds every ``THRESHOLD_INTERVAL``
4. run ``teardown``, take the final snapshot, evaluate thresholds and
   hand the snapshot to the export sinks

Key Concepts Demonstrated:
- One supervisor loop owning all periodic work (no timer sprawl)
- Cooperative stop through a single ``threading.Event``
- Executor crashes surfaced to the caller instead of silently lost
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from stampede.config import Config
from stampede.errors import StampedeError
from stampede.executors import Executor, ExecutorStats, executor_for
from stampede.metrics import MetricsAggregator, MetricsSnapshot
from stampede.scenario import RunPlan
from stampede.shared import SharedPools
from stampede.sinks import MetricsSink
from stampede.thresholds import ThresholdEvaluator, ThresholdResult, all_passed
from stampede.workload import WorkloadInvoker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """Final verdict of a run."""

    snapshot: MetricsSnapshot
    thresholds: list[ThresholdResult]
    scenarios: list[ExecutorStats] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str = ""

    @property
    def passed(self) -> bool:
        return all_passed(self.thresholds)

    @property
    def dropped(self) -> int:
        return sum(stats.dropped for stats in self.scenarios)


class Engine:
    """
    Executes a :class:`RunPlan`.

    Args:
        plan: The compiled plan.
        settings: Engine configuration class.
        sinks: Export sinks receiving the final snapshot.
    """

    def __init__(
        self,
        plan: RunPlan,
        settings: type[Config] = Config,
        sinks: Iterable[MetricsSink] = (),
    ) -> None:
        self.plan = plan
        self.settings = settings
        self.sinks = list(sinks)
        self.stop_event = threading.Event()
        self.aggregator = MetricsAggregator(settings.RESERVOIR_SIZE)
        self.pools = SharedPools(dict(plan.pools), default_capacity=settings.DEFAULT_POOL_CAPACITY)
        self.evaluator = ThresholdEvaluator(plan.thresholds)
        self.evaluator.register(self.aggregator)
        self.abort_reason = ""

    def stop(self, reason: str = "stopped") -> None:
        """Ask every executor to wind down (graceful stop still applies)."""
        if not self.stop_event.is_set():
            self.abort_reason = reason
            logger.info("Stopping run: %s", reason)
            self.stop_event.set()

    def _build_executors(self) -> list[Executor]:
        executors = []
        for spec in self.plan.scenarios:
            invoker = WorkloadInvoker(
                spec.name,
                spec.workload,
                pools=self.pools,
                tags=spec.tags,
                env=self.plan.env,
                iteration_timeout=spec.iteration_timeout,
            )
            executors.append(
                executor_for(spec.executor)(
                    spec,
                    invoker=invoker,
                    aggregator=self.aggregator,
                    settings=self.settings,
                    stop_event=self.stop_event,
                )
            )
        return executors

    def _call_hook(self, hook: Callable[..., Any] | None, label: str) -> None:
        if hook is None:
            return
        logger.info("Running %s", label)
        hook(self.pools, self.plan.env)

    def run(self) -> RunResult:
        """
        Execute the plan and return its verdict.

        Raises:
            StampedeError: If ``setup`` fails or an executor crashes.
        """
        try:
            self._call_hook(self.plan.setup, "setup")
        except Exception as exc:
            logger.error("Setup failed: %s", exc, exc_info=True)
            raise StampedeError(f"setup failed: {exc}") from exc

        executors = self._build_executors()
        stats: list[ExecutorStats] = []
        errors: list[BaseException] = []

        def _run_executor(executor: Executor) -> None:
            try:
                stats.append(executor.run())
            except BaseException as exc:
                logger.exception("Executor for scenario %r crashed", executor.spec.name)
                errors.append(exc)
                self.stop("executor crashed")

        self.aggregator.start()
        threads = [
            threading.Thread(target=_run_executor, args=(executor,), name=f"executor-{executor.spec.name}")
            for executor in executors
        ]
        for thread in threads:
            thread.start()

        try:
            self._supervise(threads)
        except KeyboardInterrupt:
            self.stop("interrupted")
            self._supervise(threads)

        try:
            self._call_hook(self.plan.teardown, "teardown")
        except Exception as exc:
            logger.error("Teardown failed: %s", exc, exc_info=True)

        if errors:
            raise StampedeError(f"executor crashed: {errors[0]}") from errors[0]

        snapshot = self.aggregator.snapshot()
        results = self.evaluator.evaluate(snapshot)
        self._export(snapshot)

        return RunResult(
            snapshot=snapshot,
            thresholds=results,
            scenarios=sorted(stats, key=lambda s: s.scenario),
            aborted=self.stop_event.is_set(),
            abort_reason=self.abort_reason,
        )

    def _supervise(self, threads: list[threading.Thread]) -> None:
        flush_every = self.settings.FLUSH_INTERVAL
        check_every = self.settings.THRESHOLD_INTERVAL
        next_check = time.monotonic() + check_every
        while any(thread.is_alive() for thread in threads):
            for thread in threads:
                thread.join(flush_every)
                if thread.is_alive():
                    break
            self.aggregator.flush()

            if time.monotonic() >= next_check:
                next_check = time.monotonic() + check_every
                self._check_abort()

    def _check_abort(self) -> None:
        if self.stop_event.is_set():
            return
        reasons = self.evaluator.abort_reasons(self.aggregator.snapshot())
        if reasons:
            failed = ", ".join(str(result.spec) for result in reasons)
            self.stop(f"threshold crossed: {failed}")

    def _export(self, snapshot: MetricsSnapshot) -> None:
        for sink in self.sinks:
            try:
                sink.write(snapshot.export(self.settings.SUMMARY_TREND_STATS))
            finally:
                sink.close()
