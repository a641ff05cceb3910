"""
Unit tests for duration parsing and formatting.
"""

import pytest

from stampede.durations import format_duration, parse_duration
from stampede.errors import ConfigError


pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "value, expected",
    [
        (30, 30.0),
        (1.5, 1.5),
        ("45", 45.0),
        ("500ms", 0.5),
        ("30s", 30.0),
        ("2m", 120.0),
        ("1m30s", 90.0),
        ("1h", 3600.0),
        ("1h2m3s", 3723.0),
        (" 10S ", 10.0),
        ("0s", 0.0),
    ],
)
def test_parse_duration_accepts_numbers_and_strings(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "abc", "10x", "s10", "1m 30s", "-5s", -1, True, None, [1]])
def test_parse_duration_rejects_invalid_values(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_error_message_names_the_field():
    with pytest.raises(ConfigError, match="gracefulStop"):
        parse_duration("soon", "gracefulStop")


@pytest.mark.parametrize(
    "seconds, expected",
    [(0.25, "250ms"), (1, "1s"), (90, "1m30s"), (3600, "1h"), (3725.5, "1h2m5.5s")],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
