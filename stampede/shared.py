"""
Bounded shared resource pools.

Workloads often pay for an expensive slow path (register, log in) and
then want every later iteration, on any VU, to reuse the result.  A
:class:`SharedPool` is the one place where concurrent iterations are
allowed to share mutable state: a fixed-capacity ring buffer that keeps
the newest entries and hands out uniformly random ones.

Key Concepts Demonstrated:
- Ring-buffer eviction with O(1) append
- A tiny critical section so readers never observe a torn write
- Explicit random source for reproducible sampling
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Generic, TypeVar

from stampede.errors import ConfigError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SharedPool(Generic[T]):
    """
    Thread-safe bounded ring buffer.

    Once ``capacity`` items are held, every append overwrites the
    oldest one.  The lock only guards a slot assignment and two integer
    updates, so appends and samples never wait on each other for long.

    Args:
        capacity: Maximum number of retained items (must be positive).
        name: Label used in logs.
    """

    def __init__(self, capacity: int, name: str = "pool") -> None:
        if capacity <= 0:
            raise ConfigError(f"Pool {name!r} capacity must be positive, got {capacity}")
        self.name = name
        self.capacity = capacity
        self._items: list[T | None] = [None] * capacity
        self._next = 0
        self._size = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self._size

    def append(self, item: T) -> None:
        """Add *item*, evicting the oldest entry if the pool is full."""
        with self._lock:
            self._items[self._next] = item
            self._next = (self._next + 1) % self.capacity
            if self._size < self.capacity:
                self._size += 1

    def sample(self, rng: random.Random | None = None) -> T | None:
        """
        Return a uniformly random retained item, or ``None`` if empty.

        Args:
            rng: Random source; the module-level generator is used when
                omitted.
        """
        chooser = rng or random
        with self._lock:
            if self._size == 0:
                return None
            # While the pool is filling, valid items occupy [0, size).
            # Once full every slot is valid.
            return self._items[chooser.randrange(self._size)]

    def snapshot(self) -> list[T]:
        """Return retained items ordered oldest to newest."""
        with self._lock:
            if self._size < self.capacity:
                return list(self._items[: self._size])
            return list(self._items[self._next :] + self._items[: self._next])

    def clear(self) -> None:
        with self._lock:
            self._items = [None] * self.capacity
            self._next = 0
            self._size = 0


class SharedPools:
    """
    Named registry of :class:`SharedPool` instances for one run.

    Pools declared in the scenario document are created up front with
    their declared capacity; any other name is created on first use
    with ``default_capacity``.
    """

    def __init__(self, declared: dict[str, int] | None = None, default_capacity: int = 100) -> None:
        self.default_capacity = default_capacity
        self._pools: dict[str, SharedPool] = {}
        self._lock = threading.Lock()
        for name, capacity in (declared or {}).items():
            self._pools[name] = SharedPool(capacity, name=name)

    def get(self, name: str) -> SharedPool:
        pool = self._pools.get(name)
        if pool is not None:
            return pool
        with self._lock:
            pool = self._pools.get(name)
            if pool is None:
                logger.debug("Creating undeclared shared pool %r", name)
                pool = SharedPool(self.default_capacity, name=name)
                self._pools[name] = pool
            return pool

    __getitem__ = get

    def names(self) -> list[str]:
        return sorted(self._pools)
