"""
Ramping-VUs executor: tracks a target VU count over time.

Every ``SAMPLING_INTERVAL`` the executor reads the ramp controller and
adds or drains VUs to match.  New VUs start iterating immediately;
surplus VUs are marked Draining, finish the iteration they are in, and
return their slot to the pool.  Draining VUs are never interrupted
unless the scenario sets ``gracefulRampDown``; then a VU still busy
after that long has its iteration cancelled.
"""

from __future__ import annotations

import logging
import math
import threading
import time

from stampede.errors import ResourceExhaustion
from stampede.executors.base import Executor
from stampede.pool import VUSlot
from stampede.scenario import ExecutorKind

logger = logging.getLogger(__name__)


def target_vus(value: float, max_vus: int) -> int:
    """Round a fractional VU target half-up and clamp it to ``[0, max_vus]``."""
    return max(0, min(max_vus, int(math.floor(value + 0.5))))


class RampingVUsExecutor(Executor):
    """Adjusts the number of live VUs to follow the stage curve."""

    kind = ExecutorKind.RAMPING_VUS

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        # Live VUs in start order; the newest are drained first.
        self._active: list[tuple[VUSlot, threading.Thread]] = []
        self._draining: dict[int, tuple[VUSlot, threading.Thread, float]] = {}

    @property
    def live_vus(self) -> int:
        return len(self._active)

    def _execute(self) -> None:
        controller = self.spec.controller()
        started = time.monotonic()
        end = started + controller.total_duration
        interval = self.settings.SAMPLING_INTERVAL

        while True:
            now = time.monotonic()
            if now >= end:
                break
            self._scale_to(target_vus(controller.value_at(now - started), self.spec.max_vus))
            self._reap_draining(now)
            if self._sleep_until(min(end, now + interval)):
                logger.info("Scenario %r interrupted", self.spec.name)
                break

    def _scale_to(self, target: int) -> None:
        self._active = [(slot, thread) for slot, thread in self._active if thread.is_alive()]
        self._prune_threads()

        if len(self._active) < target:
            logger.debug("Scenario %r scaling up %d -> %d VUs", self.spec.name, len(self._active), target)
        while len(self._active) < target:
            try:
                slot = self.pool.acquire()
            except ResourceExhaustion:
                # Draining VUs still hold slots; retry on the next sample.
                break
            self._active.append((slot, self._spawn(self._looping_vu, slot)))

        if len(self._active) > target:
            logger.debug("Scenario %r scaling down %d -> %d VUs", self.spec.name, len(self._active), target)
        while len(self._active) > target:
            slot, thread = self._active.pop()
            if self.pool.drain(slot):
                self._draining[slot.id] = (slot, thread, time.monotonic())

    def _reap_draining(self, now: float) -> None:
        limit = self.spec.graceful_ramp_down
        for slot_id, (slot, thread, since) in list(self._draining.items()):
            if not thread.is_alive():
                del self._draining[slot_id]
            elif limit is not None and now - since >= limit:
                if self.invoker.cancel(slot):
                    self._cancelled += 1
                    self._ramp_down_cancelled += 1
                    logger.info(
                        "Scenario %r: VU %d cancelled after gracefulRampDown", self.spec.name, slot.id
                    )
                del self._draining[slot_id]
