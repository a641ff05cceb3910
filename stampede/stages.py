"""
Stages and the ramp controller.

A scenario's traffic shape is a sequence of :class:`Stage` objects.
Each stage ramps linearly from the previous stage's target (or the
scenario's start value) to its own target over its duration, so the
whole sequence describes one continuous piecewise-linear curve.
:class:`RampController` answers "what is the target right now?" for
that curve and, for the arrival-rate executor, "how many iterations
should have started between two instants?".

Key Concepts Demonstrated:
- Pure functions of elapsed time (no clocks inside, trivially testable)
- Exact trapezoid integration so realized counts do not drift
- Fail-fast validation with a dedicated ``ConfigError``
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from stampede.errors import ConfigError


@dataclass(frozen=True)
class Stage:
    """
    One time-bounded segment of a ramp.

    Attributes:
        duration: Length of the segment in seconds.
        target: Value (VUs or iterations per time unit) reached at the
            end of the segment.
    """

    duration: float
    target: float


@dataclass(frozen=True)
class _Segment:
    begin: float
    end: float
    start_value: float
    end_value: float

    def value_at(self, elapsed: float) -> float:
        width = self.end - self.begin
        offset = elapsed - self.begin
        if offset >= width:
            return self.end_value
        return self.start_value + (self.end_value - self.start_value) * (offset / width)


class RampController:
    """
    Piecewise-linear target curve built from a stage sequence.

    Args:
        stages: Ordered stages of the ramp.
        start: Value of the curve at ``elapsed == 0``.

    Raises:
        ConfigError: If a duration or target is negative, or the
            durations sum to zero.
    """

    def __init__(self, stages: Sequence[Stage], start: float = 0.0) -> None:
        if start < 0:
            raise ConfigError(f"Start value must not be negative, got {start}")
        for index, stage in enumerate(stages):
            if stage.duration < 0:
                raise ConfigError(f"Stage {index} has a negative duration")
            if stage.target < 0:
                raise ConfigError(f"Stage {index} has a negative target")

        total = sum(stage.duration for stage in stages)
        if total <= 0:
            raise ConfigError("Stage durations must sum to more than zero")

        self.stages = tuple(stages)
        self.start = float(start)
        self.total_duration = float(total)
        self._segments = self._build_segments()

    def _build_segments(self) -> list[_Segment]:
        segments = []
        begin = 0.0
        previous = self.start
        for stage in self.stages:
            end = begin + stage.duration
            # Zero-width stages are jumps: they move the start value of
            # the next segment but never get interpolated themselves.
            if stage.duration > 0:
                segments.append(_Segment(begin, end, previous, float(stage.target)))
            previous = float(stage.target)
            begin = end
        return segments

    @property
    def final_value(self) -> float:
        return float(self.stages[-1].target)

    def value_at(self, elapsed: float) -> float:
        """
        Return the interpolated target at *elapsed* seconds.

        Inside a stage the value is
        ``start + (end - start) * (elapsed_in_stage / duration)``; exactly
        at a stage boundary it is the stage's ``end`` value, which is the
        next stage's ``start``.
        """
        if elapsed <= 0:
            return self._segments[0].start_value
        for segment in self._segments:
            if elapsed <= segment.end:
                return segment.value_at(elapsed)
        return self.final_value

    def integral(self, t0: float, t1: float) -> float:
        """
        Exact area under the curve between *t0* and *t1*.

        Both instants are clamped to ``[0, total_duration]``.  For a rate
        curve this is the number of iterations that should have started
        in the window.
        """
        lower = max(0.0, min(t0, self.total_duration))
        upper = max(0.0, min(t1, self.total_duration))
        if upper <= lower:
            return 0.0

        area = 0.0
        for segment in self._segments:
            left = max(lower, segment.begin)
            right = min(upper, segment.end)
            if right <= left:
                continue
            area += (right - left) * (segment.value_at(left) + segment.value_at(right)) / 2.0
        return area

    def max_value(self) -> float:
        """Largest value the curve ever reaches."""
        return max([self.start] + [stage.target for stage in self.stages])
