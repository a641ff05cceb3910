"""
Metric events, per-VU buffers, and the aggregator that merges them.

Workloads and executors never touch the aggregated metrics directly.
Every VU appends immutable :class:`MetricEvent` objects to its own
:class:`MetricsBuffer`; the :class:`MetricsAggregator` periodically
drains all buffers and folds the events into the run-wide aggregates.
The hot path therefore only ever contends on a per-VU lock, and only
while the aggregator is draining that particular buffer.

Three kinds of metric are supported:

- **Counter** -- exact running sum (``count``) plus a per-second ``rate``
- **Trend** -- exact count/avg/min/max plus a fixed-size reservoir used
  to estimate percentiles (``med``, ``p(90)``, ``p(95)``, ...)
- **Rate** -- exact ``passes / total`` ratio

Key Concepts Demonstrated:
- Producer-private buffers merged on a cadence (no global hot lock)
- Algorithm R reservoir sampling for bounded-memory percentiles
- Submetrics: tag-filtered aggregates registered up front
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


class MetricKind(str, Enum):
    """Enumeration of supported metric kinds."""

    COUNTER = "counter"
    TREND = "trend"
    RATE = "rate"


@dataclass(frozen=True)
class MetricEvent:
    """
    One immutable measurement emitted during an iteration.

    Attributes:
        kind: Counter, trend, or rate.
        name: Metric name, e.g. ``"failed_requests"``.
        value: Numeric value; for rates any non-zero value is a pass.
        tags: Read-only tag mapping.
        timestamp: Wall-clock time the event was produced.
    """

    kind: MetricKind
    name: str
    value: float
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        kind: MetricKind,
        name: str,
        value: float,
        tags: Mapping[str, Any] | None = None,
    ) -> MetricEvent:
        """Build an event, freezing a copy of *tags* with string values."""
        frozen = MappingProxyType({str(k): str(v) for k, v in (tags or {}).items()})
        return cls(kind=kind, name=name, value=float(value), tags=frozen)


def metric_key(name: str, tags: Mapping[str, str] | None = None) -> str:
    """Render ``name{k:v,...}`` with tags sorted, or just ``name``."""
    if not tags:
        return name
    inner = ",".join(f"{k}:{v}" for k, v in sorted(tags.items()))
    return f"{name}{{{inner}}}"


# =====================================================================
# Buffers
# =====================================================================


class MetricsBuffer:
    """
    Event buffer owned by a single producer (one VU or executor).

    The lock is only contended while the aggregator drains this buffer.
    """

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self._events: list[MetricEvent] = []
        self._lock = threading.Lock()

    def add(self, event: MetricEvent) -> None:
        with self._lock:
            self._events.append(event)

    def extend(self, events: Iterable[MetricEvent]) -> None:
        with self._lock:
            self._events.extend(events)

    def drain(self) -> list[MetricEvent]:
        """Return and forget all buffered events."""
        with self._lock:
            events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        return len(self._events)


# =====================================================================
# Aggregates
# =====================================================================


class Reservoir:
    """
    Fixed-size uniform sample of a stream (Algorithm R).

    While fewer than ``size`` values have been seen the reservoir holds
    all of them, so percentiles are exact for small runs.
    """

    def __init__(self, size: int, rng: random.Random | None = None) -> None:
        self.size = size
        self.seen = 0
        self.samples: list[float] = []
        self._rng = rng or random.Random()

    def add(self, value: float) -> None:
        self.seen += 1
        if len(self.samples) < self.size:
            self.samples.append(value)
            return
        slot = self._rng.randrange(self.seen)
        if slot < self.size:
            self.samples[slot] = value


def percentile(sorted_values: list[float], pct: float) -> float | None:
    """
    Linear-interpolated percentile of an already sorted list.

    Args:
        sorted_values: Values in ascending order.
        pct: Percentile in ``[0, 100]``.

    Returns:
        The percentile value, or ``None`` for an empty list.
    """
    if not sorted_values:
        return None
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (pct / 100.0) * (len(sorted_values) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return sorted_values[lower]
    weight = rank - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


class CounterAggregate:
    kind = MetricKind.COUNTER

    def __init__(self) -> None:
        self.total = 0.0
        self.events = 0

    def add(self, value: float) -> None:
        self.total += value
        self.events += 1

    def summarize(self, elapsed: float) -> dict[str, float]:
        rate = self.total / elapsed if elapsed > 0 else 0.0
        return {"count": self.total, "rate": rate}


class TrendAggregate:
    kind = MetricKind.TREND

    def __init__(self, reservoir_size: int, rng: random.Random | None = None) -> None:
        self.count = 0
        self.sum = 0.0
        self.min = math.inf
        self.max = -math.inf
        self.reservoir = Reservoir(reservoir_size, rng)

    def add(self, value: float) -> None:
        self.count += 1
        self.sum += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.reservoir.add(value)

    def summarize(self, elapsed: float) -> dict[str, float]:
        if self.count == 0:
            return {"count": 0}
        return {
            "count": self.count,
            "avg": self.sum / self.count,
            "min": self.min,
            "max": self.max,
        }


class RateAggregate:
    kind = MetricKind.RATE

    def __init__(self) -> None:
        self.passes = 0
        self.total = 0

    def add(self, value: float) -> None:
        self.total += 1
        if value:
            self.passes += 1

    def summarize(self, elapsed: float) -> dict[str, float]:
        rate = self.passes / self.total if self.total else 0.0
        return {
            "rate": rate,
            "passes": self.passes,
            "fails": self.total - self.passes,
            "total": self.total,
        }


# =====================================================================
# Snapshots
# =====================================================================


@dataclass(frozen=True)
class MetricSummary:
    """
    Read-only view of one aggregated metric (or submetric).

    Attributes:
        name: Metric name.
        kind: Metric kind.
        tags: Tag filter for submetrics, empty for the full metric.
        values: Exact statistics (see the aggregate classes).
        samples: Sorted reservoir samples, trends only.
    """

    name: str
    kind: MetricKind
    tags: Mapping[str, str]
    values: Mapping[str, float]
    samples: tuple[float, ...] = ()

    @property
    def key(self) -> str:
        return metric_key(self.name, self.tags)

    @property
    def empty(self) -> bool:
        if self.kind is MetricKind.TREND:
            return not self.values.get("count")
        if self.kind is MetricKind.RATE:
            return not self.values.get("total")
        return False

    def stat(self, aggregation: str) -> float | None:
        """
        Return one statistic by name.

        Supports every key of ``values`` plus ``med`` and ``p(N)`` for
        trends.  Returns ``None`` when a trend has no samples.
        """
        if aggregation in self.values:
            return self.values[aggregation]
        if self.kind is not MetricKind.TREND:
            raise KeyError(f"{aggregation!r} is not defined for {self.kind.value} metrics")
        if aggregation in ("avg", "min", "max"):
            return None
        if aggregation == "med":
            return percentile(list(self.samples), 50.0)
        if aggregation.startswith("p(") and aggregation.endswith(")"):
            return percentile(list(self.samples), float(aggregation[2:-1]))
        raise KeyError(f"Unknown trend statistic {aggregation!r}")


@dataclass(frozen=True)
class MetricsSnapshot:
    """Consistent point-in-time copy of every aggregate."""

    metrics: Mapping[str, MetricSummary]
    elapsed: float

    def get(self, name: str, tags: Mapping[str, str] | None = None) -> MetricSummary | None:
        return self.metrics.get(metric_key(name, tags))

    def __iter__(self) -> Iterator[MetricSummary]:
        return iter(self.metrics[key] for key in sorted(self.metrics))

    def export(
        self,
        trend_stats: Iterable[str] = ("avg", "min", "med", "max", "p(90)", "p(95)"),
    ) -> Iterator[tuple[str, str, float, dict[str, str]]]:
        """
        Yield ``(name, kind, value, tags)`` tuples for export sinks.

        Each statistic is emitted as its own tuple with a ``stat`` tag,
        so sinks never have to know about metric kinds.
        """
        stats = tuple(trend_stats)
        for summary in self:
            if summary.kind is MetricKind.TREND:
                names = ("count",) + stats if not summary.empty else ("count",)
            else:
                names = tuple(summary.values)
            for stat_name in names:
                value = summary.stat(stat_name)
                if value is None:
                    continue
                tags = dict(summary.tags)
                tags["stat"] = stat_name
                yield summary.name, summary.kind.value, float(value), tags


# =====================================================================
# Aggregator
# =====================================================================


@dataclass
class _Submetric:
    tags: Mapping[str, str]
    aggregate: Any


class MetricsAggregator:
    """
    Merges per-producer buffers into run-wide aggregates.

    Args:
        reservoir_size: Samples retained per trend.
        seed: Optional seed for reservoir replacement decisions.
    """

    def __init__(self, reservoir_size: int = 10000, seed: int | None = None) -> None:
        self.reservoir_size = reservoir_size
        self._rng = random.Random(seed)
        self._buffers: list[MetricsBuffer] = []
        self._buffers_lock = threading.Lock()
        self._merge_lock = threading.Lock()
        self._aggregates: dict[str, Any] = {}
        self._submetrics: dict[str, list[_Submetric]] = {}
        self._pending_filters: dict[str, list[dict[str, str]]] = {}
        self._started = time.monotonic()
        self.merged_events = 0

    def start(self) -> None:
        """Reset the clock used for per-second counter rates."""
        self._started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def buffer(self, owner: str = "") -> MetricsBuffer:
        """Create and register a new producer buffer."""
        buf = MetricsBuffer(owner)
        with self._buffers_lock:
            self._buffers.append(buf)
        return buf

    def register_submetric(self, name: str, tags: Mapping[str, str]) -> None:
        """
        Track events of *name* whose tags contain *tags* separately.

        Must be called before the events of interest are merged; events
        merged earlier are not replayed.
        """
        if not tags:
            return
        wanted = {str(k): str(v) for k, v in tags.items()}
        with self._merge_lock:
            filters = self._pending_filters.setdefault(name, [])
            if wanted not in filters:
                filters.append(wanted)
                aggregate = self._aggregates.get(name)
                if aggregate is not None:
                    self._submetrics.setdefault(name, []).append(
                        _Submetric(MappingProxyType(wanted), self._new_aggregate(aggregate.kind))
                    )

    def _new_aggregate(self, kind: MetricKind) -> Any:
        if kind is MetricKind.COUNTER:
            return CounterAggregate()
        if kind is MetricKind.TREND:
            return TrendAggregate(self.reservoir_size, random.Random(self._rng.random()))
        return RateAggregate()

    def _apply(self, event: MetricEvent) -> None:
        aggregate = self._aggregates.get(event.name)
        if aggregate is None:
            aggregate = self._new_aggregate(event.kind)
            self._aggregates[event.name] = aggregate
            self._submetrics[event.name] = [
                _Submetric(MappingProxyType(tags), self._new_aggregate(event.kind))
                for tags in self._pending_filters.get(event.name, [])
            ]
        elif aggregate.kind is not event.kind:
            logger.warning(
                "Dropping %s event for %r already registered as %s",
                event.kind.value,
                event.name,
                aggregate.kind.value,
            )
            return

        aggregate.add(event.value)
        for sub in self._submetrics.get(event.name, ()):
            if all(event.tags.get(k) == v for k, v in sub.tags.items()):
                sub.aggregate.add(event.value)
        self.merged_events += 1

    def flush(self) -> int:
        """
        Drain every registered buffer into the aggregates.

        Returns:
            Number of events merged by this call.
        """
        with self._buffers_lock:
            buffers = list(self._buffers)

        merged = 0
        with self._merge_lock:
            for buf in buffers:
                for event in buf.drain():
                    self._apply(event)
                    merged += 1
        return merged

    def snapshot(self) -> MetricsSnapshot:
        """Flush, then return a consistent copy of all aggregates."""
        self.flush()
        elapsed = self.elapsed
        metrics: dict[str, MetricSummary] = {}
        with self._merge_lock:
            for name, aggregate in self._aggregates.items():
                summary = self._summarize(name, MappingProxyType({}), aggregate, elapsed)
                metrics[summary.key] = summary
                for sub in self._submetrics.get(name, ()):
                    summary = self._summarize(name, sub.tags, sub.aggregate, elapsed)
                    metrics[summary.key] = summary
        return MetricsSnapshot(metrics=MappingProxyType(metrics), elapsed=elapsed)

    @staticmethod
    def _summarize(name: str, tags: Mapping[str, str], aggregate: Any, elapsed: float) -> MetricSummary:
        samples: tuple[float, ...] = ()
        if isinstance(aggregate, TrendAggregate):
            samples = tuple(sorted(aggregate.reservoir.samples))
        return MetricSummary(
            name=name,
            kind=aggregate.kind,
            tags=tags,
            values=MappingProxyType(aggregate.summarize(elapsed)),
            samples=samples,
        )
