"""
Ramping-arrival-rate executor: iterations per time unit, not VUs.

The executor ticks every ``TICK_INTERVAL``.  On each tick it adds the
area under the rate curve since the previous tick to a token bucket
and starts one iteration per whole token, keeping the fractional
remainder for the next tick.  Each start borrows a VU from a pool that
begins with ``preAllocatedVUs`` and grows lazily up to ``maxVUs``.

When no VU can be had before the tick ends the start is **dropped**
and counted in ``dropped_iterations``.  Nothing is queued: under
saturation the realized rate falls short of the requested one, and the
drop counter says by how much.
"""

from __future__ import annotations

import logging
import math
import time

from stampede.errors import ResourceExhaustion
from stampede.executors.base import Executor
from stampede.pool import VUSlot
from stampede.scenario import ExecutorKind

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Fractional accumulator that turns a rate into whole starts.

    Adding ``0.4`` three times yields ``0``, ``0`` then ``1`` start,
    leaving ``0.2`` behind, so integer truncation never loses work.
    """

    # Absorbs float noise so an area of 99.99999999 still yields 100.
    EPSILON = 1e-9

    def __init__(self) -> None:
        self.tokens = 0.0

    def add(self, amount: float) -> None:
        self.tokens += amount

    def take(self) -> int:
        """Remove and return every whole token."""
        whole = int(math.floor(self.tokens + self.EPSILON))
        if whole <= 0:
            return 0
        self.tokens = max(0.0, self.tokens - whole)
        return whole


class RampingArrivalRateExecutor(Executor):
    """Starts iterations at the rate given by the stage curve."""

    kind = ExecutorKind.RAMPING_ARRIVAL_RATE

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.bucket = TokenBucket()
        self.started_iterations = 0
        self._warned = False

    def _preallocate(self) -> int:
        return self.spec.pre_allocated_vus

    def _execute(self) -> None:
        controller = self.spec.controller()
        tick = self.settings.TICK_INTERVAL
        started = time.monotonic()
        total = controller.total_duration
        previous = 0.0
        next_tick = started + tick

        while True:
            aborted = self._sleep_until(min(next_tick, started + total))
            if aborted:
                logger.info("Scenario %r interrupted", self.spec.name)
                return

            now = time.monotonic()
            elapsed = min(now - started, total)
            self.bucket.add(controller.integral(previous, elapsed) / self.spec.time_unit)
            previous = elapsed

            tick_end = now + tick
            for _ in range(self.bucket.take()):
                self._start_one(max(0.0, tick_end - time.monotonic()))

            if elapsed >= total:
                return
            next_tick += tick
            if len(self._threads) > 4 * self.spec.max_vus:
                self._prune_threads()

    def _start_one(self, wait: float) -> None:
        try:
            slot = self.pool.acquire(timeout=wait)
        except ResourceExhaustion:
            self._record_drop()
            if not self._warned:
                self._warned = True
                logger.warning(
                    "Scenario %r: insufficient VUs, reached %d maxVUs; dropping iterations",
                    self.spec.name,
                    self.spec.max_vus,
                )
            return

        self.started_iterations += 1
        self._spawn(self._single_iteration, slot)

    def _single_iteration(self, slot: VUSlot) -> None:
        try:
            if not self.stop_event.is_set():
                self.invoker.invoke(slot)
        finally:
            self.pool.release(slot)
