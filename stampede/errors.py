"""
Exception types raised by the load engine.

Only :class:`ConfigError` ever escapes a run; everything else is an
iteration-level signal that the workload invoker and executors absorb
and turn into metrics.
"""

from __future__ import annotations


class StampedeError(Exception):
    """Base class for all engine errors."""


class ConfigError(StampedeError, ValueError):
    """The scenario document is malformed or contradictory."""


class ResourceExhaustion(StampedeError):
    """The VU pool could not hand out a slot in time."""


class IterationTimeout(StampedeError):
    """The current iteration ran past its deadline."""


class IterationCancelled(StampedeError):
    """The current iteration was force-cancelled by a run stop."""
