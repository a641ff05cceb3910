"""
Engine configuration.

Defines environment-specific configuration classes for the load engine.
These hold the *engine's* operational knobs (scheduler granularity,
aggregation cadence, reservoir size) as opposed to the per-run scenario
document, which describes the traffic itself.  The ``get_config``
factory selects the right class based on the ``STAMPEDE_ENV``
environment variable (or an explicit key).

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides for 12-factor deployability
- A testing configuration with tight intervals so timing-based tests
  finish quickly
"""

from __future__ import annotations

import os


class Config:
    """
    Base (shared) engine configuration.

    All environment-specific classes inherit from ``Config`` so that
    common defaults only need to be stated once.
    """

    # Scheduling granularity of the arrival-rate executor (seconds).
    TICK_INTERVAL: float = float(os.environ.get("STAMPEDE_TICK_INTERVAL", "0.05"))

    # How often the ramping-VUs executor re-reads its target (seconds).
    SAMPLING_INTERVAL: float = float(os.environ.get("STAMPEDE_SAMPLING_INTERVAL", "1.0"))

    # Cadence at which per-VU metric buffers are merged (seconds).
    FLUSH_INTERVAL: float = float(os.environ.get("STAMPEDE_FLUSH_INTERVAL", "1.0"))

    # Cadence of the in-run threshold check used for abortOnFail (seconds).
    THRESHOLD_INTERVAL: float = float(os.environ.get("STAMPEDE_THRESHOLD_INTERVAL", "2.0"))

    # Samples retained per trend for percentile estimation.
    RESERVOIR_SIZE: int = int(os.environ.get("STAMPEDE_RESERVOIR_SIZE", "10000"))

    DEFAULT_GRACEFUL_STOP: float = float(os.environ.get("STAMPEDE_GRACEFUL_STOP", "30"))
    DEFAULT_ITERATION_TIMEOUT: float = float(
        os.environ.get("STAMPEDE_ITERATION_TIMEOUT", "60")
    )

    # Capacity given to shared pools a workload uses without declaring.
    DEFAULT_POOL_CAPACITY: int = int(os.environ.get("STAMPEDE_POOL_CAPACITY", "100"))

    SUMMARY_TREND_STATS: tuple[str, ...] = ("avg", "min", "med", "max", "p(90)", "p(95)")

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


class DevelopmentConfig(Config):
    """Development defaults with verbose logging."""

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Test-suite overrides.

    Shrinks every interval so that executor tests measured in
    fractions of a second still see many scheduling decisions.
    """

    TICK_INTERVAL: float = float(os.environ.get("TEST_TICK_INTERVAL", "0.01"))
    SAMPLING_INTERVAL: float = float(os.environ.get("TEST_SAMPLING_INTERVAL", "0.05"))
    FLUSH_INTERVAL: float = float(os.environ.get("TEST_FLUSH_INTERVAL", "0.1"))
    THRESHOLD_INTERVAL: float = float(os.environ.get("TEST_THRESHOLD_INTERVAL", "0.1"))
    RESERVOIR_SIZE: int = 2000
    DEFAULT_GRACEFUL_STOP: float = 1.0
    DEFAULT_ITERATION_TIMEOUT: float = 5.0


class ProductionConfig(Config):
    """Production defaults; everything else comes from the environment."""


# Lookup table mapping environment name strings to their config classes.
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": ProductionConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When *None*, the ``STAMPEDE_ENV``
            environment variable is consulted, falling back to
            ``"production"`` if unset.

    Returns:
        The ``Config`` subclass matching the requested environment,
        or ``ProductionConfig`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("STAMPEDE_ENV", "production")
    return config.get(env, config["default"])
