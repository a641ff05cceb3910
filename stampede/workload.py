"""
Workload contract and the invoker that runs one iteration.

A *workload* is any callable taking an :class:`IterationContext` and
returning one of:

- ``None`` or ``True`` -- the iteration succeeded
- ``False`` -- the iteration failed (a business-level failure)
- an :class:`Outcome`
- a :class:`WorkloadResult` carrying an outcome plus extra events

The :class:`WorkloadInvoker` is the failure boundary around that
callable.  Whatever the workload raises is caught, classified, and
recorded as metrics; nothing a workload does can take the engine down.

Key Concepts Demonstrated:
- A typed function contract for otherwise opaque user code
- Cooperative deadlines and cancellation via the context
- "First finalizer wins" so a force-cancelled iteration is counted
  exactly once, even if the workload returns later
"""

from __future__ import annotations

import importlib
import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stampede.errors import ConfigError, IterationCancelled, IterationTimeout
from stampede.metrics import MetricEvent, MetricKind, MetricsBuffer
from stampede.pool import VUSlot
from stampede.shared import SharedPool, SharedPools

logger = logging.getLogger(__name__)

# Built-in metric names written once per iteration.
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATION_SUCCESS = "iteration_success"
CHECKS = "checks"
GROUP_DURATION = "group_duration"
GROUP_SEPARATOR = "::"


class Outcome(str, Enum):
    """Terminal state of one iteration."""

    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class WorkloadResult:
    """Explicit return value for workloads that build their own events."""

    outcome: Outcome = Outcome.SUCCESS
    events: Sequence[MetricEvent] = field(default_factory=tuple)


Workload = Callable[["IterationContext"], Any]


class IterationContext:
    """
    Everything a workload may use during one iteration.

    Attributes:
        scenario: Name of the running scenario.
        vu_id: Id of the VU executing the iteration.
        iteration: Zero-based iteration number within this VU.
        tags: Tags attached to every metric event of the iteration.
        rng: The VU's seeded random source; use it for all branching.
        env: Read-only variables from the document and ``-e`` flags.
        vu_state: Dict persisted across this VU's iterations.
        pools: Shared resource pools of the run.
        deadline: ``time.monotonic()`` value after which the iteration
            counts as timed out, or ``None``.
        group_path: ``::``-joined names of the enclosing :meth:`group`
            blocks, or ``""`` outside any group.
    """

    def __init__(
        self,
        *,
        scenario: str,
        vu_id: int,
        iteration: int,
        tags: Mapping[str, str],
        rng: random.Random,
        env: Mapping[str, str],
        vu_state: dict[str, Any],
        pools: SharedPools,
        deadline: float | None,
        cancel_event: threading.Event,
    ) -> None:
        self.scenario = scenario
        self.vu_id = vu_id
        self.iteration = iteration
        self.tags = tags
        self.rng = rng
        self.env = env
        self.vu_state = vu_state
        self.pools = pools
        self.deadline = deadline
        self.events: list[MetricEvent] = []
        self.group_path = ""
        self._cancel_event = cancel_event

    def pool(self, name: str) -> SharedPool:
        return self.pools.get(name)

    def remaining(self) -> float:
        """Seconds left before the deadline (``inf`` without one)."""
        if self.deadline is None:
            return math.inf
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def sleep(self, seconds: float) -> None:
        """
        Think time that honours cancellation and the deadline.

        Raises:
            IterationCancelled: If the run force-cancels this iteration.
            IterationTimeout: If the sleep would cross the deadline.
        """
        if self._cancel_event.is_set():
            raise IterationCancelled()
        if seconds <= 0:
            return
        wait = min(seconds, self.remaining())
        if self._cancel_event.wait(wait):
            raise IterationCancelled()
        if wait < seconds:
            raise IterationTimeout()

    def _merged_tags(self, tags: Mapping[str, Any] | None) -> dict[str, Any]:
        merged: dict[str, Any] = dict(self.tags)
        if self.group_path:
            merged["group"] = self.group_path
        if tags:
            merged.update(tags)
        return merged

    def emit(self, event: MetricEvent) -> None:
        self.events.append(event)

    def count(self, name: str, value: float = 1, tags: Mapping[str, Any] | None = None) -> None:
        """Add *value* to counter *name*."""
        self.emit(MetricEvent.create(MetricKind.COUNTER, name, value, self._merged_tags(tags)))

    def trend(self, name: str, value: float, tags: Mapping[str, Any] | None = None) -> None:
        """Record one sample of trend *name*."""
        self.emit(MetricEvent.create(MetricKind.TREND, name, value, self._merged_tags(tags)))

    def rate(self, name: str, ok: bool, tags: Mapping[str, Any] | None = None) -> None:
        """Record a pass (*ok* true) or fail of rate *name*."""
        self.emit(MetricEvent.create(MetricKind.RATE, name, 1 if ok else 0, self._merged_tags(tags)))

    def check(self, name: str, ok: bool, tags: Mapping[str, Any] | None = None) -> bool:
        """
        Record a named assertion on the ``checks`` rate.

        Returns *ok* so it can be used inline, e.g.
        ``if not ctx.check("status is 200", r.status_code == 200): ...``.
        """
        check_tags = {"check": name}
        if tags:
            check_tags.update(tags)
        self.rate(CHECKS, ok, check_tags)
        return bool(ok)

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        """
        Label the events emitted inside the block with a ``group`` tag.

        Groups nest: the tag is the ``::``-joined path of the enclosing
        group names, e.g. ``::browse_events::create_event``.  When the
        block completes, its wall time is recorded on ``group_duration``
        (milliseconds) under the same tag.

        Example:
            with ctx.group("browse_events"):
                request(ctx, "GET", "/events", "getEvents")
        """
        if not name or GROUP_SEPARATOR in name:
            raise ValueError(f"Invalid group name {name!r}")
        parent = self.group_path
        self.group_path = f"{parent}{GROUP_SEPARATOR}{name}"
        started = time.monotonic()
        try:
            yield
            self.trend(GROUP_DURATION, (time.monotonic() - started) * 1000.0)
        finally:
            self.group_path = parent


class _InFlight:
    """Bookkeeping for one running iteration."""

    def __init__(self, slot: VUSlot, started: float) -> None:
        self.slot = slot
        self.started = started
        self.cancel_event = threading.Event()
        self._finalized = False
        self._lock = threading.Lock()

    def finalize(self) -> bool:
        """Claim the right to record this iteration; only the first call wins."""
        with self._lock:
            if self._finalized:
                return False
            self._finalized = True
            return True


def normalize_result(result: Any) -> tuple[Outcome, Sequence[MetricEvent]]:
    """Map a workload's return value onto ``(outcome, extra_events)``."""
    if result is None or result is True:
        return Outcome.SUCCESS, ()
    if result is False:
        return Outcome.FAILURE, ()
    if isinstance(result, Outcome):
        return result, ()
    if isinstance(result, WorkloadResult):
        return result.outcome, tuple(result.events)
    return (Outcome.SUCCESS if result else Outcome.FAILURE), ()


class WorkloadInvoker:
    """
    Failure/timeout boundary around a workload for one scenario.

    Args:
        scenario: Scenario name, added to every event as a tag.
        workload: The workload callable.
        pools: Shared resource pools of the run.
        tags: Scenario tags.
        env: Variables exposed through ``ctx.env``.
        iteration_timeout: Per-iteration deadline in seconds, or
            ``None`` to disable.
    """

    def __init__(
        self,
        scenario: str,
        workload: Workload,
        *,
        pools: SharedPools,
        tags: Mapping[str, str] | None = None,
        env: Mapping[str, str] | None = None,
        iteration_timeout: float | None = None,
    ) -> None:
        self.scenario = scenario
        self.workload = workload
        self.pools = pools
        self.tags = {"scenario": scenario, **dict(tags or {})}
        self.env = dict(env or {})
        self.iteration_timeout = iteration_timeout
        self._inflight: dict[int, _InFlight] = {}
        self._lock = threading.Lock()

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def invoke(self, slot: VUSlot) -> Outcome:
        """
        Run one iteration on the calling thread and record its outcome.

        Never raises for workload-level problems: exceptions become
        ``Outcome.ERROR``, missed deadlines ``Outcome.TIMEOUT``.

        Returns:
            The recorded outcome.
        """
        started = time.monotonic()
        record = _InFlight(slot, started)
        deadline = started + self.iteration_timeout if self.iteration_timeout else None
        ctx = IterationContext(
            scenario=self.scenario,
            vu_id=slot.id,
            iteration=slot.iterations,
            tags=self.tags,
            rng=slot.rng,
            env=self.env,
            vu_state=slot.vu_state,
            pools=self.pools,
            deadline=deadline,
            cancel_event=record.cancel_event,
        )
        with self._lock:
            self._inflight[slot.id] = record

        extra: Sequence[MetricEvent] = ()
        try:
            outcome, extra = normalize_result(self.workload(ctx))
        except IterationTimeout:
            outcome = Outcome.TIMEOUT
        except IterationCancelled:
            outcome = Outcome.CANCELLED
        except Exception as exc:
            # Workload errors are data, not engine failures.
            logger.debug(
                "Workload raised in scenario %r (VU %d): %s", self.scenario, slot.id, exc, exc_info=True
            )
            outcome = Outcome.ERROR
            ctx.count("workload_errors", 1, {"error": type(exc).__name__})

        finished = time.monotonic()
        if outcome in (Outcome.SUCCESS, Outcome.FAILURE) and deadline is not None and finished > deadline:
            outcome = Outcome.TIMEOUT

        with self._lock:
            self._inflight.pop(slot.id, None)
        slot.iterations += 1

        if not record.finalize():
            # Already recorded as cancelled by a forced stop.
            return Outcome.CANCELLED

        slot.buffer.extend(ctx.events)
        slot.buffer.extend(extra)
        self._record_completion(slot.buffer, outcome, finished - started)
        return outcome

    def _record_completion(self, buffer: MetricsBuffer, outcome: Outcome, duration: float) -> None:
        tags = {**self.tags, "outcome": outcome.value}
        buffer.add(MetricEvent.create(MetricKind.COUNTER, ITERATIONS, 1, tags))
        buffer.add(MetricEvent.create(MetricKind.TREND, ITERATION_DURATION, duration * 1000.0, tags))
        buffer.add(
            MetricEvent.create(MetricKind.RATE, ITERATION_SUCCESS, outcome is Outcome.SUCCESS, self.tags)
        )

    def cancel(self, slot: VUSlot) -> bool:
        """
        Force-cancel the iteration running on *slot*, if any.

        The iteration is recorded as cancelled immediately; whatever the
        workload does afterwards is discarded.
        """
        with self._lock:
            record = self._inflight.pop(slot.id, None)
        if record is None:
            return False
        return self._cancel_record(record)

    def cancel_inflight(self) -> int:
        """Force-cancel every in-flight iteration; returns how many."""
        with self._lock:
            records = list(self._inflight.values())
            self._inflight.clear()
        return sum(1 for record in records if self._cancel_record(record))

    def _cancel_record(self, record: _InFlight) -> bool:
        record.cancel_event.set()
        if not record.finalize():
            return False
        self._record_completion(record.slot.buffer, Outcome.CANCELLED, time.monotonic() - record.started)
        return True


def load_workload(ref: str) -> Workload:
    """
    Resolve a ``"package.module:function"`` reference.

    Raises:
        ConfigError: If the module cannot be imported or the attribute
            is missing or not callable.
    """
    if not isinstance(ref, str) or ":" not in ref:
        raise ConfigError(f"exec must look like 'module:function', got {ref!r}")

    module_name, _, attr_path = ref.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import workload module {module_name!r}: {exc}") from exc

    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigError(f"Workload {ref!r} not found") from exc

    if not callable(target):
        raise ConfigError(f"Workload {ref!r} is not callable")
    return target
