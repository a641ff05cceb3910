"""
Constant-VUs executor: a fixed number of VUs looping for a duration.
"""

from __future__ import annotations

import logging
import time

from stampede.executors.base import Executor
from stampede.scenario import ExecutorKind

logger = logging.getLogger(__name__)


class ConstantVUsExecutor(Executor):
    """
    Spawns every VU at start; each runs iterations back-to-back.

    Once ``duration`` has elapsed admission closes and the usual
    graceful-stop sequence runs.
    """

    kind = ExecutorKind.CONSTANT_VUS

    def _execute(self) -> None:
        started = time.monotonic()
        for _ in range(self.spec.vus):
            self._spawn(self._looping_vu, self.pool.acquire())
        logger.debug("Scenario %r spawned %d VUs", self.spec.name, self.spec.vus)

        if self._sleep_until(started + self.spec.duration):
            logger.info("Scenario %r interrupted", self.spec.name)
