"""
Shared machinery for all executors.

An executor decides *when* iterations start.  Everything else, from
slot bookkeeping to the graceful-stop sequence, is identical across
strategies and lives here:

1. wait for ``startTime``
2. run the strategy-specific schedule (:meth:`Executor._execute`)
3. close admission, give in-flight iterations ``gracefulStop`` to finish
4. force-cancel survivors (recorded as ``cancelled``) and close the pool

Key Concepts Demonstrated:
- Template-method pattern: subclasses only implement the schedule
- Abortable waits on a shared ``threading.Event``
- Daemon VU threads so a hung workload can never block shutdown
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from stampede.config import Config
from stampede.metrics import MetricEvent, MetricKind, MetricsAggregator
from stampede.pool import VUPool, VUSlot, VUState
from stampede.scenario import ExecutorKind, ScenarioSpec
from stampede.workload import WorkloadInvoker

logger = logging.getLogger(__name__)

DROPPED_ITERATIONS = "dropped_iterations"


@dataclass(frozen=True)
class ExecutorStats:
    """What an executor reports after it finishes."""

    scenario: str
    executor: ExecutorKind
    vus_max: int
    peak_vus: int
    dropped: int
    cancelled: int
    duration: float
    ramp_down_cancelled: int = 0


class Executor:
    """
    Base class for scheduling strategies.

    Args:
        spec: The compiled scenario.
        invoker: Failure boundary around the scenario's workload.
        aggregator: Run-wide metrics aggregator.
        settings: Engine configuration class.
        stop_event: Run-wide abort signal (threshold abort, Ctrl-C).
    """

    kind: ExecutorKind

    def __init__(
        self,
        spec: ScenarioSpec,
        *,
        invoker: WorkloadInvoker,
        aggregator: MetricsAggregator,
        settings: type[Config] = Config,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.spec = spec
        self.invoker = invoker
        self.aggregator = aggregator
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self.buffer = aggregator.buffer(f"{spec.name}-executor")
        self.admission_closed = threading.Event()
        self.dropped = 0
        self.pool = VUPool(
            spec.max_vus,
            preallocate=self._preallocate(),
            factory=self._new_slot,
            name=spec.name,
        )
        self._threads: list[threading.Thread] = []
        self._cancelled = 0
        self._ramp_down_cancelled = 0

    def _preallocate(self) -> int:
        return 0

    def _new_slot(self, slot_id: int) -> VUSlot:
        rng = random.Random(self.spec.seed * 1_000_003 + slot_id) if self.spec.seed is not None else None
        return VUSlot(
            slot_id,
            buffer=self.aggregator.buffer(f"{self.spec.name}-vu-{slot_id}"),
            rng=rng,
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def run(self) -> ExecutorStats:
        """Run the scenario to completion; blocks the calling thread."""
        started = time.monotonic()
        if self.spec.start_time and self.stop_event.wait(self.spec.start_time):
            logger.info("Scenario %r aborted before its start time", self.spec.name)
            self.pool.close()
            return self._stats(started)

        logger.info(
            "Scenario %r starting (%s, %d max VUs)",
            self.spec.name,
            self.kind.value,
            self.spec.max_vus,
        )
        try:
            self._execute()
        finally:
            self._shutdown()

        stats = self._stats(started)
        logger.info(
            "Scenario %r finished: peak %d VUs, %d dropped, %d cancelled",
            stats.scenario,
            stats.peak_vus,
            stats.dropped,
            stats.cancelled,
        )
        return stats

    def _execute(self) -> None:
        raise NotImplementedError

    def _shutdown(self) -> None:
        self.admission_closed.set()
        deadline = time.monotonic() + self.spec.graceful_stop
        self._join(self._threads, deadline)

        forced = self.invoker.cancel_inflight()
        self._cancelled += forced
        if forced:
            logger.warning(
                "Scenario %r: %d iteration(s) still running after gracefulStop were cancelled",
                self.spec.name,
                forced,
            )
        self.pool.close()

    @staticmethod
    def _join(threads: Iterable[threading.Thread], deadline: float) -> None:
        for thread in list(threads):
            thread.join(max(0.0, deadline - time.monotonic()))

    def _stats(self, started: float) -> ExecutorStats:
        return ExecutorStats(
            scenario=self.spec.name,
            executor=self.kind,
            vus_max=self.pool.size,
            peak_vus=self.pool.peak_running,
            dropped=self.dropped,
            cancelled=self._cancelled,
            duration=time.monotonic() - started,
            ramp_down_cancelled=self._ramp_down_cancelled,
        )

    # -----------------------------------------------------------------
    # Helpers for subclasses
    # -----------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set() or self.admission_closed.is_set()

    def _sleep_until(self, moment: float) -> bool:
        """Wait until the monotonic instant *moment*; True if aborted."""
        remaining = moment - time.monotonic()
        if remaining <= 0:
            return self.stop_event.is_set()
        return self.stop_event.wait(remaining)

    def _spawn(self, target: Callable[[VUSlot], None], slot: VUSlot) -> threading.Thread:
        thread = threading.Thread(
            target=target,
            args=(slot,),
            name=f"{self.spec.name}-vu-{slot.id}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()
        return thread

    def _prune_threads(self) -> None:
        self._threads = [thread for thread in self._threads if thread.is_alive()]

    def _looping_vu(self, slot: VUSlot) -> None:
        """Run iterations back-to-back until admission closes or the VU drains."""
        try:
            while not self.stopping and slot.state is VUState.RUNNING:
                self.invoker.invoke(slot)
        finally:
            self.pool.release(slot)

    def _record_drop(self) -> None:
        self.dropped += 1
        self.buffer.add(
            MetricEvent.create(MetricKind.COUNTER, DROPPED_ITERATIONS, 1, self.invoker.tags)
        )
