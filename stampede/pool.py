"""
Virtual-user slots and the bounded pool that lends them out.

A :class:`VUSlot` is the identity of one virtual user: its id, its
private metric buffer, its seeded random source and whatever state the
workload keeps between iterations.  The :class:`VUPool` owns every slot
of a scenario and lends each one to at most one in-flight iteration at
a time.

State machine::

    Idle --acquire--> Running --drain--> Draining
      ^                  |                   |
      +----release-------+-------release-----+
                         |   (pool closed)
                         +------------------------------> Stopped

Key Concepts Demonstrated:
- Lazy growth up to a hard maximum
- Bounded waits with ``threading.Condition`` instead of unbounded queues
- Explicit, inspectable state per slot
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from stampede.errors import ConfigError, ResourceExhaustion
from stampede.metrics import MetricsBuffer

logger = logging.getLogger(__name__)


class VUState(str, Enum):
    """Lifecycle states of a VU slot."""

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class VUSlot:
    """
    One virtual user.

    Attributes:
        id: Pool-unique identifier, starting at 1.
        state: Current :class:`VUState`; only the pool changes it.
        buffer: Metric buffer this VU's iterations write to.
        rng: Random source handed to the workload (seeded per VU).
        vu_state: Free-form dict persisted across this VU's iterations.
        iterations: Number of iterations this VU has completed.
    """

    def __init__(
        self,
        slot_id: int,
        buffer: MetricsBuffer | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.id = slot_id
        self.state = VUState.IDLE
        self.buffer = buffer if buffer is not None else MetricsBuffer(f"vu-{slot_id}")
        self.rng = rng or random.Random()
        self.vu_state: dict[str, Any] = {}
        self.iterations = 0

    def __repr__(self) -> str:
        return f"VUSlot(id={self.id}, state={self.state.value})"


class VUPool:
    """
    Bounded pool of :class:`VUSlot` objects.

    Args:
        max_size: Hard upper bound on the number of slots ever created.
        preallocate: Slots created (Idle) up front.
        factory: Builds a new slot for a given id; defaults to a bare
            :class:`VUSlot`.
        name: Label used in logs.
    """

    def __init__(
        self,
        max_size: int,
        *,
        preallocate: int = 0,
        factory: Callable[[int], VUSlot] | None = None,
        name: str = "pool",
    ) -> None:
        if max_size <= 0:
            raise ConfigError(f"VU pool {name!r} needs a positive max size, got {max_size}")
        if preallocate < 0 or preallocate > max_size:
            raise ConfigError(
                f"VU pool {name!r}: preallocated VUs ({preallocate}) must be between 0 and {max_size}"
            )
        self.name = name
        self.max_size = max_size
        self._factory = factory or VUSlot
        self._slots: list[VUSlot] = []
        self._idle: deque[VUSlot] = deque()
        self._cond = threading.Condition()
        self._running = 0
        self._peak = 0
        self._closed = False

        for _ in range(preallocate):
            self._idle.append(self._create())

    def _create(self) -> VUSlot:
        slot = self._factory(len(self._slots) + 1)
        slot.state = VUState.IDLE
        self._slots.append(slot)
        return slot

    @property
    def size(self) -> int:
        """Number of slots created so far."""
        return len(self._slots)

    @property
    def running(self) -> int:
        """Slots currently lent out (Running or Draining)."""
        return self._running

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def peak_running(self) -> int:
        """Highest number of simultaneously lent-out slots."""
        return self._peak

    @property
    def closed(self) -> bool:
        return self._closed

    def slots(self) -> list[VUSlot]:
        with self._cond:
            return list(self._slots)

    def acquire(self, timeout: float = 0.0) -> VUSlot:
        """
        Lend out a slot, growing the pool if it is below ``max_size``.

        Args:
            timeout: Seconds to wait for a slot to be released when the
                pool is exhausted.  ``0`` means do not wait.

        Returns:
            A slot in the Running state.

        Raises:
            ResourceExhaustion: If no slot became available in time or
                the pool is closed.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                if self._closed:
                    raise ResourceExhaustion(f"VU pool {self.name!r} is closed")
                if self._idle:
                    slot = self._idle.popleft()
                    break
                if len(self._slots) < self.max_size:
                    slot = self._create()
                    logger.debug("VU pool %r grew to %d slots", self.name, len(self._slots))
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ResourceExhaustion(
                        f"VU pool {self.name!r} exhausted ({self.max_size} VUs busy)"
                    )
                self._cond.wait(remaining)

            slot.state = VUState.RUNNING
            self._running += 1
            self._peak = max(self._peak, self._running)
            return slot

    def release(self, slot: VUSlot) -> VUState:
        """
        Return a lent-out slot.

        Running and Draining slots become Idle again, unless the pool
        is closed, in which case they stop.

        Returns:
            The slot's new state.
        """
        with self._cond:
            if slot.state not in (VUState.RUNNING, VUState.DRAINING):
                raise ValueError(f"Cannot release {slot!r}")
            self._running -= 1
            if self._closed:
                slot.state = VUState.STOPPED
            else:
                slot.state = VUState.IDLE
                self._idle.append(slot)
            self._cond.notify()
            return slot.state

    def drain(self, slot: VUSlot) -> bool:
        """Mark a Running slot as Draining; returns whether it changed."""
        with self._cond:
            if slot.state is VUState.RUNNING:
                slot.state = VUState.DRAINING
                return True
            return False

    def close(self) -> None:
        """Refuse further acquisitions and stop all idle slots."""
        with self._cond:
            self._closed = True
            while self._idle:
                self._idle.popleft().state = VUState.STOPPED
            self._cond.notify_all()
