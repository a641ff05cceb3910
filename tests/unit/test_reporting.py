"""
Unit tests for export sinks, the text summary and engine configuration.
"""

import io
import json

import pytest

from stampede.config import DevelopmentConfig, ProductionConfig, TestingConfig, get_config
from stampede.engine import RunResult
from stampede.errors import ConfigError
from stampede.executors import ExecutorStats
from stampede.metrics import MetricEvent, MetricKind, MetricsAggregator
from stampede.scenario import ExecutorKind
from stampede.sinks import CsvSink, JsonLinesSink, sink_from_spec
from stampede.summary import print_summary
from stampede.thresholds import ThresholdEvaluator, parse_thresholds


pytestmark = pytest.mark.unit

RECORDS = [
    ("latency", "trend", 12.5, {"stat": "p(95)", "name": "login"}),
    ("reqs", "counter", 3.0, {"stat": "count"}),
]


class TestSinks:

    def test_json_lines_sink(self, tmp_path):
        sink = JsonLinesSink(tmp_path / "m.jsonl")

        sink.write(RECORDS)
        sink.close()

        lines = (tmp_path / "m.jsonl").read_text().splitlines()
        assert json.loads(lines[0]) == {
            "metric": "latency",
            "kind": "trend",
            "value": 12.5,
            "tags": {"stat": "p(95)", "name": "login"},
        }
        assert len(lines) == 2

    def test_csv_sink_promotes_stat_column(self, tmp_path):
        sink = CsvSink(tmp_path / "m.csv")

        sink.write(RECORDS)
        sink.close()

        lines = (tmp_path / "m.csv").read_text().splitlines()
        assert lines[0] == "metric,kind,stat,value,tags"
        assert lines[1] == "latency,trend,p(95),12.5,name:login"
        assert lines[2] == "reqs,counter,count,3.0,"

    @pytest.mark.parametrize("spec, kind", [("json=a.jsonl", JsonLinesSink), ("csv=a.csv", CsvSink)])
    def test_sink_from_spec(self, spec, kind):
        assert isinstance(sink_from_spec(spec), kind)

    @pytest.mark.parametrize("spec", ["json", "json=", "=x", "xml=a.xml"])
    def test_sink_from_spec_rejects_bad_values(self, spec):
        with pytest.raises(ConfigError):
            sink_from_spec(spec)


class TestSummary:

    def test_summary_lists_scenarios_metrics_and_thresholds(self):
        # Arrange
        aggregator = MetricsAggregator()
        buffer = aggregator.buffer()
        for value in (10, 20, 30):
            buffer.add(MetricEvent.create(MetricKind.TREND, "latency", value))
        buffer.add(MetricEvent.create(MetricKind.RATE, "checks", 1))
        snapshot = aggregator.snapshot()
        specs = parse_thresholds({"latency": "max<25"})
        result = RunResult(
            snapshot=snapshot,
            thresholds=ThresholdEvaluator(specs).evaluate(snapshot),
            scenarios=[ExecutorStats("browse", ExecutorKind.RAMPING_ARRIVAL_RATE, 4, 3, 2, 0, 1.0)],
        )
        stream = io.StringIO()

        # Act
        print_summary(result, ("avg", "max"), stream)

        # Assert
        text = stream.getvalue()
        assert "browse" in text and "2 dropped" in text
        assert "avg=20 max=30 count=3" in text
        assert "100.00% (1 of 1)" in text
        assert "latency: max<25" in text
        assert "Overall: FAIL" in text


class TestConfig:

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("development", DevelopmentConfig),
            ("testing", TestingConfig),
            ("production", ProductionConfig),
            ("unknown", ProductionConfig),
        ],
    )
    def test_get_config(self, name, expected):
        assert get_config(name) is expected

    def test_get_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("STAMPEDE_ENV", "development")

        assert get_config() is DevelopmentConfig

    def test_testing_config_uses_short_intervals(self):
        assert TestingConfig.TICK_INTERVAL < ProductionConfig.TICK_INTERVAL
        assert TestingConfig.DEFAULT_GRACEFUL_STOP < ProductionConfig.DEFAULT_GRACEFUL_STOP
