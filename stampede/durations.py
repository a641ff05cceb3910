"""
Duration parsing for scenario documents.

Accepts the Go-style duration strings used by k6-like scenario files
(``"500ms"``, ``"30s"``, ``"1m30s"``, ``"2h"``) as well as plain numbers,
which are taken to be seconds.
"""

from __future__ import annotations

import re

from stampede.errors import ConfigError

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(value: str | int | float, field_name: str = "duration") -> float:
    """
    Convert *value* to a non-negative number of seconds.

    Args:
        value: A number of seconds or a duration string made of one or
            more ``<number><unit>`` parts.
        field_name: Name used in error messages.

    Returns:
        The duration in seconds.

    Raises:
        ConfigError: If the value is negative, empty, or not parseable.
    """
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a duration, got {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigError(f"{field_name} must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_parts(text, field_name)
    else:
        raise ConfigError(f"{field_name} must be a duration, got {value!r}")

    if seconds < 0:
        raise ConfigError(f"{field_name} must not be negative, got {value!r}")
    return seconds


def _parse_parts(text: str, field_name: str) -> float:
    position = 0
    total = 0.0
    for match in _PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(text):
        raise ConfigError(f"Invalid {field_name}: {text!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render *seconds* compactly, e.g. ``90.0`` -> ``"1m30s"``."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"

    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs:g}s")
    return "".join(parts)
