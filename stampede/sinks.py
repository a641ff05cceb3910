"""
Metric export sinks.

A sink receives ``(name, kind, value, tags)`` tuples from a metrics
snapshot.  What it does with them -- a file, a socket, a time-series
database -- is its own business; the engine only knows
:class:`MetricsSink`.

Built-in sinks:

- :class:`JsonLinesSink` -- one JSON object per tuple
- :class:`CsvSink` -- ``name,kind,stat,value,tags`` rows

Both are selected on the command line with ``--out json=PATH`` or
``--out csv=PATH``.
"""

from __future__ import annotations

import csv
import json
from collections.abc import Iterable
from pathlib import Path
from typing import IO, Protocol

from stampede.errors import ConfigError

Record = tuple[str, str, float, dict[str, str]]


class MetricsSink(Protocol):
    """Interface every export sink implements."""

    def write(self, records: Iterable[Record]) -> None: ...

    def close(self) -> None: ...


class _FileSink:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: IO[str] | None = None

    def _open(self, newline: str | None = None) -> IO[str]:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding="utf-8", newline=newline)
        return self._handle

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class JsonLinesSink(_FileSink):
    """Write each record as a JSON object on its own line."""

    def write(self, records: Iterable[Record]) -> None:
        handle = self._open()
        for name, kind, value, tags in records:
            handle.write(
                json.dumps({"metric": name, "kind": kind, "value": value, "tags": tags}, sort_keys=True)
            )
            handle.write("\n")


class CsvSink(_FileSink):
    """Write records as CSV with the ``stat`` tag promoted to a column."""

    FIELDS = ("metric", "kind", "stat", "value", "tags")

    def __init__(self, path: str | Path) -> None:
        super().__init__(path)
        self._writer: csv.DictWriter | None = None

    def write(self, records: Iterable[Record]) -> None:
        if self._writer is None:
            self._writer = csv.DictWriter(self._open(newline=""), fieldnames=self.FIELDS)
            self._writer.writeheader()
        for name, kind, value, tags in records:
            remaining = dict(tags)
            stat = remaining.pop("stat", "")
            self._writer.writerow(
                {
                    "metric": name,
                    "kind": kind,
                    "stat": stat,
                    "value": value,
                    "tags": ",".join(f"{k}:{v}" for k, v in sorted(remaining.items())),
                }
            )

    def close(self) -> None:
        super().close()
        self._writer = None


SINKS = {
    "json": JsonLinesSink,
    "csv": CsvSink,
}


def sink_from_spec(spec: str) -> MetricsSink:
    """
    Build a sink from a ``kind=path`` command-line value.

    Raises:
        ConfigError: If the kind is unknown or the path is missing.
    """
    kind, sep, path = spec.partition("=")
    if not sep or not path:
        raise ConfigError(f"--out expects KIND=PATH, got {spec!r}")
    try:
        factory = SINKS[kind]
    except KeyError as exc:
        raise ConfigError(f"Unknown output kind {kind!r}; choose from {sorted(SINKS)}") from exc
    return factory(path)
