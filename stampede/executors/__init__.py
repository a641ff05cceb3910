"""
Executors: the scheduling strategies that decide when iterations start.

- :class:`ConstantVUsExecutor` -- fixed concurrency for a duration
- :class:`RampingVUsExecutor` -- concurrency following a stage curve
- :class:`RampingArrivalRateExecutor` -- start rate following a stage
  curve, with lazily grown VUs and drop-and-count under saturation
"""

from __future__ import annotations

from stampede.executors.arrival_rate import RampingArrivalRateExecutor, TokenBucket
from stampede.executors.base import DROPPED_ITERATIONS, Executor, ExecutorStats
from stampede.executors.constant import ConstantVUsExecutor
from stampede.executors.ramping import RampingVUsExecutor
from stampede.scenario import ExecutorKind

EXECUTORS: dict[ExecutorKind, type[Executor]] = {
    ExecutorKind.CONSTANT_VUS: ConstantVUsExecutor,
    ExecutorKind.RAMPING_VUS: RampingVUsExecutor,
    ExecutorKind.RAMPING_ARRIVAL_RATE: RampingArrivalRateExecutor,
}


def executor_for(kind: ExecutorKind) -> type[Executor]:
    """Return the executor class implementing *kind*."""
    return EXECUTORS[kind]


__all__ = [
    "DROPPED_ITERATIONS",
    "EXECUTORS",
    "ConstantVUsExecutor",
    "Executor",
    "ExecutorStats",
    "RampingArrivalRateExecutor",
    "RampingVUsExecutor",
    "TokenBucket",
    "executor_for",
]
