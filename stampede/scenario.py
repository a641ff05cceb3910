"""
Scenario documents: loading, environment overrides, validation, compile.

The :class:`ScenarioRegistry` turns a YAML scenario document into an
immutable :class:`RunPlan`.  Everything that can be wrong with a
document is detected here and reported as a :class:`ConfigError` before
a single VU is started.

Document shape (see ``scenarios/`` for complete examples)::

    env: {BASE_URL: "http://localhost:5000/api"}
    pools: {tokens: 100}
    setup: stampede.workloads.event_api:seed_users
    thresholds:
      failed_requests: ["count<100"]
    scenarios:
      browsing:
        executor: ramping-arrival-rate
        exec: stampede.workloads.event_api:browse_events
        preAllocatedVUs: 10
        maxVUs: 100
        stages: [{duration: 10s, target: 10}, {duration: 10s, target: 0}]

A document without ``scenarios`` may instead give top-level ``stages``
(one ramping-VUs scenario) or ``vus`` + ``duration`` (one constant-VUs
scenario); either way the scenario is called ``default``.

Key Concepts Demonstrated:
- Fail-fast validation with precise, field-level error messages
- Environment overrides applied between parsing and validation
- Frozen dataclasses for load-once, never-mutated configuration
"""

from __future__ import annotations

import copy
import logging
import math
import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from stampede.config import Config
from stampede.durations import parse_duration
from stampede.errors import ConfigError
from stampede.stages import RampController, Stage
from stampede.thresholds import ThresholdSpec, parse_thresholds
from stampede.workload import Workload, load_workload

logger = logging.getLogger(__name__)

ENV_PREFIX = "STAMPEDE__"
DEFAULT_SCENARIO = "default"


class ExecutorKind(str, Enum):
    """Traffic-shaping strategies."""

    CONSTANT_VUS = "constant-vus"
    RAMPING_VUS = "ramping-vus"
    RAMPING_ARRIVAL_RATE = "ramping-arrival-rate"


_COMMON_KEYS = {"executor", "exec", "gracefulStop", "startTime", "iterationTimeout", "seed", "tags"}

_EXECUTOR_KEYS = {
    ExecutorKind.CONSTANT_VUS: {"vus", "duration"},
    ExecutorKind.RAMPING_VUS: {"startVUs", "stages", "maxVUs", "gracefulRampDown"},
    ExecutorKind.RAMPING_ARRIVAL_RATE: {"startRate", "timeUnit", "preAllocatedVUs", "maxVUs", "stages"},
}

_DOCUMENT_KEYS = {
    "scenarios",
    "thresholds",
    "env",
    "pools",
    "setup",
    "teardown",
    # Shortcut form for a single default scenario.
    "stages",
    "vus",
    "duration",
    "exec",
    "iterationTimeout",
}

# Environment override field names -> document keys.
_OVERRIDE_FIELDS = {
    "VUS": "vus",
    "START_VUS": "startVUs",
    "PRE_ALLOCATED_VUS": "preAllocatedVUs",
    "MAX_VUS": "maxVUs",
    "DURATION": "duration",
    "START_RATE": "startRate",
    "TIME_UNIT": "timeUnit",
    "GRACEFUL_STOP": "gracefulStop",
}

_STAGE_OVERRIDE = re.compile(r"STAGE_(\d+)_(TARGET|DURATION)")


@dataclass(frozen=True)
class ScenarioSpec:
    """
    Compiled, immutable description of one scenario.

    ``stages`` always describes the executor's target curve: for
    constant VUs it is a single flat stage, for the ramping executors
    it is the document's stages starting at ``start_vus`` or
    ``start_rate`` respectively.
    """

    name: str
    executor: ExecutorKind
    stages: tuple[Stage, ...]
    workload: Workload
    exec_ref: str
    vus: int = 0
    start_vus: int = 0
    pre_allocated_vus: int = 0
    max_vus: int = 0
    start_rate: float = 0.0
    time_unit: float = 1.0
    graceful_stop: float = 30.0
    graceful_ramp_down: float | None = None
    start_time: float = 0.0
    iteration_timeout: float | None = None
    seed: int | None = None
    tags: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def start_value(self) -> float:
        if self.executor is ExecutorKind.RAMPING_ARRIVAL_RATE:
            return self.start_rate
        if self.executor is ExecutorKind.RAMPING_VUS:
            return float(self.start_vus)
        return float(self.vus)

    def controller(self) -> RampController:
        return RampController(self.stages, start=self.start_value)

    @property
    def duration(self) -> float:
        """Scheduling window, excluding ``start_time`` and graceful stop."""
        return sum(stage.duration for stage in self.stages)


@dataclass(frozen=True)
class RunPlan:
    """Everything needed to execute one run."""

    scenarios: tuple[ScenarioSpec, ...]
    thresholds: tuple[ThresholdSpec, ...] = ()
    pools: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    setup: Callable[..., Any] | None = None
    teardown: Callable[..., Any] | None = None
    source: str = "<memory>"


# =====================================================================
# Value helpers
# =====================================================================


def _as_int(value: Any, where: str, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where} must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"{where} must be a whole number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{where} must be >= {minimum}, got {value!r}")
    return int(value)


def _as_float(value: Any, where: str, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where} must be a number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{where} must be >= {minimum}, got {value!r}")
    return float(value)


def _as_mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where} must be a mapping, got {type(value).__name__}")
    return dict(value)


def _parse_stages(raw: Any, where: str) -> tuple[Stage, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"{where}.stages must be a non-empty list")
    stages = []
    for index, item in enumerate(raw):
        item_where = f"{where}.stages[{index}]"
        if not isinstance(item, Mapping):
            raise ConfigError(f"{item_where} must be a mapping")
        unknown = set(item) - {"duration", "target"}
        if unknown:
            raise ConfigError(f"{item_where} has unknown keys: {sorted(unknown)}")
        if "duration" not in item or "target" not in item:
            raise ConfigError(f"{item_where} needs both duration and target")
        stages.append(
            Stage(
                duration=parse_duration(item["duration"], f"{item_where}.duration"),
                target=_as_float(item["target"], f"{item_where}.target"),
            )
        )
    return tuple(stages)


# =====================================================================
# Environment overrides
# =====================================================================


def _normalize_name(name: str) -> str:
    return name.upper().replace("-", "_")


def _override_value(raw: str) -> Any:
    # Reuse YAML scalar rules so "10" -> 10, "0.5" -> 0.5, "30s" -> "30s".
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def apply_env_overrides(document: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """
    Apply ``STAMPEDE__<SCENARIO>__<FIELD>`` overrides to a document.

    The document must already be in ``scenarios`` form.  Returns a new
    document; the input is left untouched.

    Raises:
        ConfigError: If ``scenarios`` (or an overridden scenario or stage)
            is not a mapping, or an override names an unknown scenario,
            field or stage index.
    """
    result = copy.deepcopy(document)
    scenarios = _as_mapping(result.get("scenarios"), "scenarios")
    by_name = {_normalize_name(str(name)): name for name in scenarios}

    for key in sorted(environ):
        if not key.startswith(ENV_PREFIX):
            continue
        scenario_part, sep, field_part = key[len(ENV_PREFIX):].partition("__")
        if not sep or not field_part:
            raise ConfigError(f"Malformed override {key!r}; expected {ENV_PREFIX}<SCENARIO>__<FIELD>")
        name = by_name.get(scenario_part)
        if name is None:
            raise ConfigError(f"Override {key!r} names unknown scenario {scenario_part!r}")

        scenario = scenarios[name]
        if not isinstance(scenario, dict):
            raise ConfigError(f"scenarios.{name} must be a mapping, got {type(scenario).__name__}")
        value = _override_value(environ[key])
        stage_match = _STAGE_OVERRIDE.fullmatch(field_part)
        if stage_match:
            index = int(stage_match.group(1))
            stages = scenario.get("stages")
            if not isinstance(stages, list) or index >= len(stages):
                raise ConfigError(f"Override {key!r} names unknown stage {index}")
            if not isinstance(stages[index], dict):
                raise ConfigError(f"scenarios.{name}.stages[{index}] must be a mapping")
            stages[index][stage_match.group(2).lower()] = value
        elif field_part in _OVERRIDE_FIELDS:
            scenario[_OVERRIDE_FIELDS[field_part]] = value
        else:
            raise ConfigError(f"Override {key!r} names unknown field {field_part!r}")
        logger.info("Applied override %s=%s", key, environ[key])

    return result


# =====================================================================
# Registry
# =====================================================================


class ScenarioRegistry:
    """
    Loads, validates and compiles scenario documents into run plans.

    Args:
        settings: Engine configuration (defaults for graceful stop,
            iteration timeout, pool capacity).
        environ: Source of ``STAMPEDE__`` overrides; defaults to
            ``os.environ``.
    """

    def __init__(self, settings: type[Config] = Config, environ: Mapping[str, str] | None = None) -> None:
        self.settings = settings
        self.environ = dict(os.environ if environ is None else environ)

    def load(self, path: str | Path, extra_env: Mapping[str, str] | None = None) -> RunPlan:
        """
        Read a YAML document from *path* and compile it.

        Args:
            path: Scenario file.
            extra_env: ``-e KEY=VALUE`` pairs; they take precedence over
                the process environment and are also visible to
                workloads through ``ctx.env``.
        """
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                document = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigError(f"Cannot read scenario file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

        plan = self.compile(document, extra_env=extra_env, source=str(path))
        logger.info("Loaded %d scenario(s) from %s", len(plan.scenarios), path)
        return plan

    def compile(
        self,
        document: Any,
        extra_env: Mapping[str, str] | None = None,
        source: str = "<memory>",
    ) -> RunPlan:
        """Validate a parsed document and return its :class:`RunPlan`."""
        if not isinstance(document, Mapping):
            raise ConfigError("Scenario document must be a mapping")
        unknown = set(document) - _DOCUMENT_KEYS
        if unknown:
            raise ConfigError(f"Unknown top-level keys: {sorted(unknown)}")

        overrides = {**self.environ, **dict(extra_env or {})}
        normalized = apply_env_overrides(self._normalize(dict(document)), overrides)

        raw_scenarios = _as_mapping(normalized.get("scenarios"), "scenarios")
        if not raw_scenarios:
            raise ConfigError("Document defines no scenarios")

        scenarios = tuple(
            self._compile_scenario(str(name), raw) for name, raw in raw_scenarios.items()
        )
        thresholds = tuple(parse_thresholds(_as_mapping(normalized.get("thresholds"), "thresholds")))

        env = {str(k): str(v) for k, v in _as_mapping(normalized.get("env"), "env").items()}
        env.update({str(k): str(v) for k, v in (extra_env or {}).items()})

        pools = {}
        for name, raw in _as_mapping(normalized.get("pools"), "pools").items():
            capacity = raw.get("capacity") if isinstance(raw, Mapping) else raw
            pools[str(name)] = _as_int(capacity, f"pools.{name}", minimum=1)

        setup = load_workload(normalized["setup"]) if normalized.get("setup") else None
        teardown = load_workload(normalized["teardown"]) if normalized.get("teardown") else None

        return RunPlan(
            scenarios=scenarios,
            thresholds=thresholds,
            pools=MappingProxyType(pools),
            env=MappingProxyType(env),
            setup=setup,
            teardown=teardown,
            source=source,
        )

    @staticmethod
    def _normalize(document: dict[str, Any]) -> dict[str, Any]:
        """Rewrite the single-scenario shortcut forms into ``scenarios`` form."""
        shortcut_keys = {"stages", "vus", "duration", "exec", "iterationTimeout"}
        present = shortcut_keys & set(document)
        if "scenarios" in document:
            if present:
                raise ConfigError(
                    f"Top-level {sorted(present)} cannot be combined with scenarios"
                )
            return document

        if not present:
            return document

        scenario: dict[str, Any] = {key: document.pop(key) for key in present}
        if "stages" in scenario:
            if "duration" in scenario:
                raise ConfigError("Top-level stages and duration are mutually exclusive")
            scenario["executor"] = ExecutorKind.RAMPING_VUS.value
            if "vus" in scenario:
                scenario["startVUs"] = scenario.pop("vus")
        else:
            scenario["executor"] = ExecutorKind.CONSTANT_VUS.value
        document["scenarios"] = {DEFAULT_SCENARIO: scenario}
        return document

    def _compile_scenario(self, name: str, raw: Any) -> ScenarioSpec:
        where = f"scenarios.{name}"
        data = _as_mapping(raw, where)

        try:
            kind = ExecutorKind(data.get("executor"))
        except ValueError as exc:
            choices = ", ".join(k.value for k in ExecutorKind)
            raise ConfigError(f"{where}.executor must be one of: {choices}") from exc

        unknown = set(data) - _COMMON_KEYS - _EXECUTOR_KEYS[kind]
        if unknown:
            raise ConfigError(f"{where} has unknown keys for {kind.value}: {sorted(unknown)}")

        exec_ref = data.get("exec")
        if not exec_ref:
            raise ConfigError(f"{where}.exec is required")
        workload = load_workload(exec_ref)

        timeout_raw = data.get("iterationTimeout", self.settings.DEFAULT_ITERATION_TIMEOUT)
        iteration_timeout = parse_duration(timeout_raw, f"{where}.iterationTimeout") or None
        seed = data.get("seed")
        if seed is not None:
            seed = _as_int(seed, f"{where}.seed")

        common: dict[str, Any] = {
            "name": name,
            "executor": kind,
            "workload": workload,
            "exec_ref": str(exec_ref),
            "graceful_stop": parse_duration(
                data.get("gracefulStop", self.settings.DEFAULT_GRACEFUL_STOP), f"{where}.gracefulStop"
            ),
            "start_time": parse_duration(data.get("startTime", 0), f"{where}.startTime"),
            "iteration_timeout": iteration_timeout,
            "seed": seed,
            "tags": MappingProxyType(
                {str(k): str(v) for k, v in _as_mapping(data.get("tags"), f"{where}.tags").items()}
            ),
        }

        if kind is ExecutorKind.CONSTANT_VUS:
            vus = _as_int(data.get("vus", 1), f"{where}.vus", minimum=1)
            if "duration" not in data:
                raise ConfigError(f"{where}.duration is required for {kind.value}")
            duration = parse_duration(data["duration"], f"{where}.duration")
            spec = ScenarioSpec(
                stages=(Stage(duration=duration, target=float(vus)),),
                vus=vus,
                pre_allocated_vus=vus,
                max_vus=vus,
                **common,
            )
        elif kind is ExecutorKind.RAMPING_VUS:
            stages = _parse_stages(data.get("stages"), where)
            start_vus = _as_int(data.get("startVUs", 1), f"{where}.startVUs")
            peak = max([start_vus] + [stage.target for stage in stages])
            max_vus = _as_int(data.get("maxVUs", max(1, math.ceil(peak))), f"{where}.maxVUs", minimum=1)
            spec = ScenarioSpec(
                stages=stages,
                start_vus=start_vus,
                max_vus=max_vus,
                graceful_ramp_down=(
                    parse_duration(data["gracefulRampDown"], f"{where}.gracefulRampDown")
                    if "gracefulRampDown" in data
                    else None
                ),
                **common,
            )
        else:
            stages = _parse_stages(data.get("stages"), where)
            if "preAllocatedVUs" not in data:
                raise ConfigError(f"{where}.preAllocatedVUs is required for {kind.value}")
            pre_allocated = _as_int(data["preAllocatedVUs"], f"{where}.preAllocatedVUs")
            max_vus = _as_int(data.get("maxVUs", pre_allocated), f"{where}.maxVUs", minimum=1)
            if max_vus < pre_allocated:
                raise ConfigError(
                    f"{where}.maxVUs ({max_vus}) must be >= preAllocatedVUs ({pre_allocated})"
                )
            time_unit = parse_duration(data.get("timeUnit", 1), f"{where}.timeUnit")
            if time_unit <= 0:
                raise ConfigError(f"{where}.timeUnit must be positive")
            spec = ScenarioSpec(
                stages=stages,
                pre_allocated_vus=pre_allocated,
                max_vus=max_vus,
                start_rate=_as_float(data.get("startRate", 0), f"{where}.startRate"),
                time_unit=time_unit,
                **common,
            )

        # Raises ConfigError for degenerate curves (e.g. all-zero durations).
        spec.controller()
        return spec
