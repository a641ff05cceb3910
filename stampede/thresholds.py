"""
Pass/fail thresholds over aggregated metrics.

Thresholds are declared per metric selector, k6 style::

    thresholds:
      failed_requests: ["count<10"]
      iteration_duration: ["p(95)<500", "avg<200"]
      "http_req_duration{name:getEvents}":
        - threshold: "p(95)<400"
          abortOnFail: true
          delayAbortEval: 10s

A selector with ``{key:value,...}`` targets a *submetric*: only events
carrying those tags count.  Every expression is evaluated
independently; a single failure fails the run.

Key Concepts Demonstrated:
- Small hand-written grammar with precise ConfigError messages
- Read-only evaluation against immutable snapshots
- Optional early abort for runaway failures
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from stampede.durations import parse_duration
from stampede.errors import ConfigError
from stampede.metrics import MetricsAggregator, MetricsSnapshot, metric_key

logger = logging.getLogger(__name__)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_SELECTOR = re.compile(r"^\s*([A-Za-z_][\w.\-]*)\s*(?:\{(.*)\})?\s*$")
_EXPRESSION = re.compile(
    r"^\s*(count|rate|avg|min|max|med|p\(\s*\d+(?:\.\d+)?\s*\))\s*(<=|>=|==|!=|<|>)\s*(-?\d+(?:\.\d+)?)\s*$"
)

# Aggregations that read as zero when the metric never received an event.
_ZERO_WHEN_MISSING = {"count", "rate"}


@dataclass(frozen=True)
class ThresholdSpec:
    """
    One compiled threshold expression.

    Attributes:
        metric: Metric name.
        tags: Submetric tag filter (empty for the whole metric).
        aggregation: ``count``, ``rate``, ``avg``, ``min``, ``max``,
            ``med`` or ``p(N)``.
        operator: Comparison operator symbol.
        limit: Right-hand side of the comparison.
        expression: The original expression text.
        abort_on_fail: Stop the run as soon as this threshold fails.
        delay_abort_eval: Seconds into the run before abort checks start.
    """

    metric: str
    aggregation: str
    operator: str
    limit: float
    expression: str
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @property
    def selector(self) -> str:
        return metric_key(self.metric, self.tags)

    def __str__(self) -> str:
        return f"{self.selector}: {self.expression}"


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of evaluating one threshold against a snapshot."""

    spec: ThresholdSpec
    actual: float | None
    passed: bool
    note: str = ""


def parse_selector(selector: str) -> tuple[str, dict[str, str]]:
    """
    Split ``name{k:v,...}`` into the metric name and tag filter.

    Raises:
        ConfigError: If the selector is malformed.
    """
    match = _SELECTOR.match(selector)
    if not match:
        raise ConfigError(f"Invalid threshold metric selector: {selector!r}")
    name, raw_tags = match.group(1), match.group(2)
    tags: dict[str, str] = {}
    if raw_tags is not None:
        if not raw_tags.strip():
            raise ConfigError(f"Empty tag filter in selector {selector!r}")
        for pair in raw_tags.split(","):
            key, sep, value = pair.partition(":")
            if not sep or not key.strip():
                raise ConfigError(f"Invalid tag filter {pair!r} in selector {selector!r}")
            tags[key.strip()] = value.strip()
    return name, tags


def parse_expression(expression: str) -> tuple[str, str, float]:
    """
    Parse ``"<aggregation> <op> <limit>"``.

    Returns:
        ``(aggregation, operator, limit)`` with whitespace removed from
        percentile aggregations, e.g. ``("p(95)", "<", 500.0)``.

    Raises:
        ConfigError: If the expression does not match the grammar.
    """
    if not isinstance(expression, str):
        raise ConfigError(f"Threshold expression must be a string, got {expression!r}")
    match = _EXPRESSION.match(expression)
    if not match:
        raise ConfigError(f"Invalid threshold expression: {expression!r}")
    aggregation = match.group(1).replace(" ", "")
    if aggregation.startswith("p("):
        pct = float(aggregation[2:-1])
        if pct > 100:
            raise ConfigError(f"Percentile out of range in {expression!r}")
    return aggregation, match.group(2), float(match.group(3))


def parse_thresholds(document: Mapping[str, Any]) -> list[ThresholdSpec]:
    """
    Compile the ``thresholds`` section of a scenario document.

    Each value may be a single expression string, a list of strings, or
    a list mixing strings and ``{threshold, abortOnFail,
    delayAbortEval}`` mappings.
    """
    specs: list[ThresholdSpec] = []
    for selector, raw in document.items():
        name, tags = parse_selector(str(selector))
        entries = raw if isinstance(raw, list) else [raw]
        if not entries:
            raise ConfigError(f"Threshold {selector!r} has no expressions")

        for entry in entries:
            abort_on_fail = False
            delay = 0.0
            if isinstance(entry, Mapping):
                unknown = set(entry) - {"threshold", "abortOnFail", "delayAbortEval"}
                if unknown:
                    raise ConfigError(f"Threshold {selector!r} has unknown keys: {sorted(unknown)}")
                if "threshold" not in entry:
                    raise ConfigError(f"Threshold {selector!r} entry needs a 'threshold' key")
                expression = entry["threshold"]
                abort_on_fail = bool(entry.get("abortOnFail", False))
                delay = parse_duration(entry.get("delayAbortEval", 0), f"{selector}.delayAbortEval")
            else:
                expression = entry

            aggregation, op, limit = parse_expression(expression)
            specs.append(
                ThresholdSpec(
                    metric=name,
                    tags=MappingProxyType(tags),
                    aggregation=aggregation,
                    operator=op,
                    limit=limit,
                    expression=str(expression).strip(),
                    abort_on_fail=abort_on_fail,
                    delay_abort_eval=delay,
                )
            )
    return specs


def evaluate_threshold(spec: ThresholdSpec, snapshot: MetricsSnapshot) -> ThresholdResult:
    """
    Evaluate one threshold.

    A metric that never received an event reads as ``0`` for ``count``
    and ``rate``; trend statistics without samples pass with a
    ``"no data"`` note.
    """
    summary = snapshot.get(spec.metric, spec.tags)
    if summary is None:
        actual = 0.0 if spec.aggregation in _ZERO_WHEN_MISSING else None
    else:
        try:
            actual = summary.stat(spec.aggregation)
        except KeyError as exc:
            return ThresholdResult(spec, None, False, str(exc.args[0]))

    if actual is None:
        return ThresholdResult(spec, None, True, "no data")
    return ThresholdResult(spec, actual, OPERATORS[spec.operator](actual, spec.limit))


class ThresholdEvaluator:
    """Evaluates a fixed set of thresholds against metric snapshots."""

    def __init__(self, specs: list[ThresholdSpec] | tuple[ThresholdSpec, ...]) -> None:
        self.specs = tuple(specs)

    def register(self, aggregator: MetricsAggregator) -> None:
        """Make the aggregator track every submetric a threshold reads."""
        for spec in self.specs:
            aggregator.register_submetric(spec.metric, spec.tags)

    def evaluate(self, snapshot: MetricsSnapshot) -> list[ThresholdResult]:
        return [evaluate_threshold(spec, snapshot) for spec in self.specs]

    def abort_reasons(self, snapshot: MetricsSnapshot) -> list[ThresholdResult]:
        """Failing ``abortOnFail`` thresholds whose delay has elapsed."""
        reasons = []
        for spec in self.specs:
            if not spec.abort_on_fail or snapshot.elapsed < spec.delay_abort_eval:
                continue
            result = evaluate_threshold(spec, snapshot)
            if not result.passed:
                reasons.append(result)
        return reasons


def all_passed(results: list[ThresholdResult]) -> bool:
    return all(result.passed for result in results)
