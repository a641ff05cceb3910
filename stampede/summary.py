"""
Human-readable end-of-run summary printed by the CLI.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from typing import TextIO

from stampede.durations import format_duration
from stampede.engine import RunResult
from stampede.metrics import MetricKind, MetricSummary

WIDTH = 72


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value)}"
    return f"{value:.4g}" if abs(value) < 1 else f"{value:.2f}"


def format_metric(summary: MetricSummary, trend_stats: Iterable[str]) -> str:
    """Render one metric's statistics as ``key=value`` pairs."""
    if summary.kind is MetricKind.TREND:
        if summary.empty:
            return "no data"
        parts = [f"{stat}={_format_number(summary.stat(stat))}" for stat in trend_stats]
        parts.append(f"count={_format_number(summary.values['count'])}")
        return " ".join(parts)
    if summary.kind is MetricKind.RATE:
        values = summary.values
        return (
            f"{values['rate'] * 100:.2f}% "
            f"({_format_number(values['passes'])} of {_format_number(values['total'])})"
        )
    values = summary.values
    return f"count={_format_number(values['count'])} rate={values['rate']:.2f}/s"


def print_summary(
    result: RunResult,
    trend_stats: Iterable[str] = ("avg", "min", "med", "max", "p(90)", "p(95)"),
    stream: TextIO | None = None,
) -> None:
    """Print scenarios, metrics and threshold results to *stream*."""
    out = stream or sys.stdout
    stats = tuple(trend_stats)

    print("Run Summary", file=out)
    print("=" * WIDTH, file=out)
    print(f"Duration: {format_duration(result.snapshot.elapsed)}", file=out)
    if result.aborted:
        print(f"Aborted: {result.abort_reason}", file=out)

    print("-" * WIDTH, file=out)
    print("Scenarios", file=out)
    for scenario in result.scenarios:
        print(
            f"  {scenario.scenario:<20}{scenario.executor.value:<22}"
            f"peak {scenario.peak_vus}/{scenario.vus_max} VUs, "
            f"{scenario.dropped} dropped, {scenario.cancelled} cancelled",
            file=out,
        )

    print("-" * WIDTH, file=out)
    print("Metrics", file=out)
    for summary in result.snapshot:
        label = summary.key
        dots = "." * max(2, 34 - len(label))
        print(f"  {label} {dots} {format_metric(summary, stats)}", file=out)

    if result.thresholds:
        print("-" * WIDTH, file=out)
        print(f"{'Threshold':<40}{'Actual':>14}{'Status':>10}", file=out)
        for item in result.thresholds:
            actual = "-" if item.actual is None else _format_number(item.actual)
            status = "PASS" if item.passed else "FAIL"
            print(f"{str(item.spec):<40}{actual:>14}{status:>10}", file=out)
            if item.note and not item.passed:
                print(f"    {item.note}", file=out)

    print("-" * WIDTH, file=out)
    print(f"Overall: {'PASS' if result.passed else 'FAIL'}", file=out)
