"""
Unit tests for the pure scheduling helpers used by executors.
"""

import pytest

from stampede.executors import TokenBucket
from stampede.executors.ramping import target_vus
from stampede.stages import RampController, Stage


pytestmark = pytest.mark.unit


class TestTokenBucket:

    def test_fractions_accumulate_into_whole_starts(self):
        bucket = TokenBucket()
        taken = []

        for _ in range(3):
            bucket.add(0.4)
            taken.append(bucket.take())

        assert taken == [0, 0, 1]
        assert bucket.tokens == pytest.approx(0.2)

    def test_take_removes_every_whole_token(self):
        bucket = TokenBucket()
        bucket.add(3.75)

        assert bucket.take() == 3
        assert bucket.take() == 0
        assert bucket.tokens == pytest.approx(0.75)

    def test_float_noise_does_not_lose_a_start(self):
        bucket = TokenBucket()
        for _ in range(10):
            bucket.add(0.1)

        assert bucket.take() == 1

    def test_ticked_integral_yields_exact_total(self):
        # Arrange
        controller = RampController([Stage(10, 10), Stage(10, 0)], start=0)
        bucket = TokenBucket()
        started = 0
        previous = 0.0

        # Act
        for tick in range(1, 2001):
            now = tick * 0.01
            bucket.add(controller.integral(previous, now))
            previous = now
            started += bucket.take()

        # Assert
        assert started == 100


class TestTargetVUs:

    @pytest.mark.parametrize(
        "value, max_vus, expected",
        [(0, 10, 0), (0.49, 10, 0), (0.5, 10, 1), (2.5, 10, 3), (7.2, 10, 7), (15, 10, 10), (-1, 10, 0)],
    )
    def test_rounds_half_up_and_clamps(self, value, max_vus, expected):
        assert target_vus(value, max_vus) == expected
