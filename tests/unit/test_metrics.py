"""
Unit tests for metric events, buffers and the aggregator.

Key Concepts Demonstrated:
- Exactness of counters merged from many producer threads
- Statistical assertions with explicit tolerances (percentiles)
- Submetric filtering by tags
"""

import random
import threading

import pytest

from stampede.metrics import (
    MetricEvent,
    MetricKind,
    MetricsAggregator,
    MetricsBuffer,
    Reservoir,
    metric_key,
    percentile,
)


pytestmark = pytest.mark.unit


def counter(name, value=1, /, **tags):
    return MetricEvent.create(MetricKind.COUNTER, name, value, tags)


def trend(name, value, /, **tags):
    return MetricEvent.create(MetricKind.TREND, name, value, tags)


def rate(name, ok, /, **tags):
    return MetricEvent.create(MetricKind.RATE, name, ok, tags)


class TestEventsAndBuffers:

    def test_event_tags_are_frozen_strings(self):
        source = {"status": 200}
        event = MetricEvent.create(MetricKind.COUNTER, "http_reqs", 1, source)
        source["status"] = 500

        assert event.tags == {"status": "200"}
        with pytest.raises(TypeError):
            event.tags["status"] = "404"

    def test_metric_key_sorts_tags(self):
        assert metric_key("m") == "m"
        assert metric_key("m", {"b": "2", "a": "1"}) == "m{a:1,b:2}"

    def test_drain_empties_the_buffer(self):
        buffer = MetricsBuffer("vu-1")
        buffer.add(counter("c"))
        buffer.extend([counter("c"), counter("c")])

        drained = buffer.drain()

        assert len(drained) == 3
        assert len(buffer) == 0
        assert buffer.drain() == []


class TestPercentiles:

    def test_percentile_interpolates(self):
        values = [10.0, 20.0, 30.0, 40.0]

        assert percentile(values, 0) == 10.0
        assert percentile(values, 50) == pytest.approx(25.0)
        assert percentile(values, 100) == 40.0

    def test_percentile_of_empty_and_single(self):
        assert percentile([], 95) is None
        assert percentile([7.0], 95) == 7.0

    def test_reservoir_is_bounded_and_counts_everything(self):
        reservoir = Reservoir(100, random.Random(1))
        for value in range(10_000):
            reservoir.add(float(value))

        assert len(reservoir.samples) == 100
        assert reservoir.seen == 10_000

    def test_p95_estimate_is_close_to_true_value(self):
        # Arrange
        aggregator = MetricsAggregator(reservoir_size=1000, seed=42)
        buffer = aggregator.buffer()
        values = list(range(10_000))
        random.Random(5).shuffle(values)
        for value in values:
            buffer.add(trend("latency", value))

        # Act
        summary = aggregator.snapshot().get("latency")

        # Assert
        assert summary.stat("p(95)") == pytest.approx(9500, abs=500)
        assert summary.stat("med") == pytest.approx(5000, abs=500)
        assert summary.values["count"] == 10_000
        assert summary.stat("min") == 0
        assert summary.stat("max") == 9999
        assert summary.stat("avg") == pytest.approx(4999.5)

    def test_small_trends_have_exact_percentiles(self):
        aggregator = MetricsAggregator(reservoir_size=100)
        buffer = aggregator.buffer()
        for value in range(1, 101):
            buffer.add(trend("latency", value))

        summary = aggregator.snapshot().get("latency")

        assert summary.stat("p(90)") == pytest.approx(90.1)


class TestAggregator:

    def test_counters_merge_exactly_across_threads(self):
        # Arrange
        aggregator = MetricsAggregator()
        producers, per_producer = 16, 1000
        buffers = [aggregator.buffer(f"vu-{i}") for i in range(producers)]
        stop = threading.Event()

        def flusher():
            while not stop.is_set():
                aggregator.flush()

        def produce(buffer):
            for _ in range(per_producer):
                buffer.add(counter("iterations"))

        # Act
        flush_thread = threading.Thread(target=flusher)
        flush_thread.start()
        threads = [threading.Thread(target=produce, args=(b,)) for b in buffers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        stop.set()
        flush_thread.join()

        # Assert
        summary = aggregator.snapshot().get("iterations")
        assert summary.values["count"] == producers * per_producer

    def test_rate_metric(self):
        aggregator = MetricsAggregator()
        buffer = aggregator.buffer()
        for ok in (True, True, True, False):
            buffer.add(rate("checks", ok))

        summary = aggregator.snapshot().get("checks")

        assert summary.values["rate"] == pytest.approx(0.75)
        assert summary.values["passes"] == 3
        assert summary.values["fails"] == 1

    def test_submetric_counts_only_matching_tags(self):
        aggregator = MetricsAggregator()
        aggregator.register_submetric("http_req_duration", {"name": "login"})
        buffer = aggregator.buffer()
        buffer.add(trend("http_req_duration", 100, name="login"))
        buffer.add(trend("http_req_duration", 5, name="events"))
        buffer.add(trend("http_req_duration", 300, name="login", status="200"))

        snapshot = aggregator.snapshot()

        assert snapshot.get("http_req_duration").values["count"] == 3
        login = snapshot.get("http_req_duration", {"name": "login"})
        assert login.values["count"] == 2
        assert login.stat("max") == 300

    def test_submetric_registered_after_metric_exists(self):
        aggregator = MetricsAggregator()
        buffer = aggregator.buffer()
        buffer.add(counter("errors", kind="timeout"))
        aggregator.flush()

        aggregator.register_submetric("errors", {"kind": "timeout"})
        buffer.add(counter("errors", kind="timeout"))
        snapshot = aggregator.snapshot()

        assert snapshot.get("errors").values["count"] == 2
        assert snapshot.get("errors", {"kind": "timeout"}).values["count"] == 1

    def test_kind_conflict_is_dropped(self):
        aggregator = MetricsAggregator()
        buffer = aggregator.buffer()
        buffer.add(counter("mixed", 3))
        buffer.add(trend("mixed", 100))

        summary = aggregator.snapshot().get("mixed")

        assert summary.kind is MetricKind.COUNTER
        assert summary.values["count"] == 3

    def test_empty_trend_reports_no_stats(self):
        aggregator = MetricsAggregator()
        aggregator.register_submetric("latency", {"name": "never"})
        aggregator.buffer().add(trend("latency", 1, name="other"))

        summary = aggregator.snapshot().get("latency", {"name": "never"})

        assert summary.empty
        assert summary.stat("p(95)") is None
        assert summary.stat("avg") is None

    def test_non_trend_rejects_percentiles(self):
        aggregator = MetricsAggregator()
        aggregator.buffer().add(counter("c"))

        with pytest.raises(KeyError):
            aggregator.snapshot().get("c").stat("p(95)")

    def test_export_emits_one_tuple_per_stat(self):
        aggregator = MetricsAggregator()
        buffer = aggregator.buffer()
        buffer.add(counter("reqs", 2))
        buffer.add(trend("latency", 10, name="a"))

        records = list(aggregator.snapshot().export(("avg", "p(95)")))

        stats = {(name, tags["stat"]) for name, _, _, tags in records}
        assert stats == {
            ("latency", "count"),
            ("latency", "avg"),
            ("latency", "p(95)"),
            ("reqs", "count"),
            ("reqs", "rate"),
        }
        assert all(isinstance(value, float) for _, _, value, _ in records)
