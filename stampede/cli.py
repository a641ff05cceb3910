"""
Command-line entry point.

Usage::

    stampede run scenarios/event_api.yml
    stampede run scenarios/event_api.yml -e BASE_URL=http://localhost:5000/api
    stampede run scenarios/event_api.yml --out json=results.jsonl --out csv=results.csv

Exit codes follow a multi-state convention so that CI can distinguish
"thresholds breached" from "the scenario file is broken" from "the
engine itself crashed":

- ``0`` -- all thresholds passed
- ``1`` -- at least one threshold was breached
- ``2`` -- the scenario document (or command line) is invalid
- ``3`` -- the run failed unexpectedly (setup error, executor crash)
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Sequence

from stampede import __version__
from stampede.config import get_config
from stampede.engine import Engine
from stampede.errors import ConfigError, StampedeError
from stampede.scenario import ScenarioRegistry
from stampede.sinks import sink_from_spec
from stampede.summary import print_summary

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2
EXIT_RUNTIME_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    """Build the ``stampede`` argument parser."""
    parser = argparse.ArgumentParser(
        prog="stampede",
        description="Scenario-driven load generator.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subcommands = parser.add_subparsers(dest="command", required=True)

    run = subcommands.add_parser("run", help="Run a scenario document")
    run.add_argument("scenario", help="Path to a YAML scenario document")
    run.add_argument(
        "-e",
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Variable for workloads and STAMPEDE__ overrides (repeatable)",
    )
    run.add_argument(
        "--out",
        action="append",
        default=[],
        metavar="KIND=PATH",
        help="Export the final metrics (json or csv; repeatable)",
    )
    run.add_argument(
        "--config",
        default=None,
        choices=["development", "testing", "production"],
        help="Engine configuration (default from STAMPEDE_ENV)",
    )
    run.add_argument("--log-level", default=None, help="Logging level (default from config)")
    run.add_argument("--quiet", action="store_true", help="Do not print the summary")
    return parser


def _parse_env_pairs(pairs: Sequence[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigError(f"-e expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def run_command(args: argparse.Namespace) -> int:
    """Execute ``stampede run`` and return the process exit code."""
    settings = get_config(args.config)
    configure_logging(args.log_level or settings.LOG_LEVEL)

    try:
        extra_env = _parse_env_pairs(args.env)
        plan = ScenarioRegistry(settings).load(args.scenario, extra_env=extra_env)
        sinks = [sink_from_spec(spec) for spec in args.out]
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    engine = Engine(plan, settings=settings, sinks=sinks)
    previous_handler = signal.getsignal(signal.SIGTERM)
    try:
        signal.signal(signal.SIGTERM, lambda *_: engine.stop("terminated"))
    except ValueError:
        # Not on the main thread (e.g. invoked from a test runner thread).
        previous_handler = None

    try:
        result = engine.run()
    except StampedeError as exc:
        print(f"Run failed: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    if not args.quiet:
        print_summary(result, settings.SUMMARY_TREND_STATS)
    return EXIT_PASS if result.passed else EXIT_THRESHOLD_BREACH


def main(argv: Sequence[str] | None = None) -> int:
    """Parse *argv* and dispatch to the selected subcommand."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "run":
        return run_command(args)
    parser.error(f"unknown command {args.command!r}")
    return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
