import math
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from syncload.errors import ConfigError
from syncload.metrics import (
    Counter,
    Distribution,
    MetricsRegistry,
    Rate,
    Threshold,
    evaluate_thresholds,
    interpolate,
    parse_thresholds,
)


class TestCounter:
    def test_concurrent_adds_sum_exactly(self) -> None:
        counter = Counter("hits")
        deltas = list(range(1, 2001))

        def writer(chunk):
            for delta in chunk:
                counter.add(delta)

        chunks = [deltas[i::16] for i in range(16)]
        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(writer, chunks))
        assert counter.value == sum(deltas)

    def test_negative_delta_for_gauges(self) -> None:
        counter = Counter("active")
        counter.add(3)
        counter.add(-1)
        assert counter.aggregates() == {"count": 2}


class TestRate:
    def test_ratio(self) -> None:
        rate = Rate("ok")
        for success in (True, True, False, True):
            rate.add(success)
        assert rate.value == pytest.approx(0.75)
        assert rate.aggregates() == {"rate": 0.75, "passes": 3, "fails": 1}

    def test_empty_rate_is_zero(self) -> None:
        assert Rate("ok").value == 0.0


class TestDistribution:
    def test_interpolation(self) -> None:
        values = [10.0, 20.0, 30.0, 40.0]
        assert interpolate(values, 50) == pytest.approx(25.0)
        assert interpolate(values, 0) == 10.0
        assert interpolate(values, 100) == 40.0
        assert interpolate([], 50) == 0.0

    def test_percentile_bounds_and_monotonic(self) -> None:
        dist = Distribution("rtt")
        rng = random.Random(7)
        for _ in range(500):
            dist.observe(rng.expovariate(0.1))
        assert dist.percentile(0) == dist.min
        assert dist.percentile(100) == dist.max
        previous = -math.inf
        for p in range(0, 101):
            value = dist.percentile(p)
            assert value >= previous
            previous = value

    def test_summary_values(self) -> None:
        dist = Distribution("rtt")
        for value in (1, 2, 3, 4, 5):
            dist.observe(value)
        assert dist.count == 5
        assert dist.mean == 3.0
        assert dist.median == 3.0
        assert dist.percentile(90) == pytest.approx(4.6)
        aggregates = dist.aggregates()
        assert aggregates["min"] == 1.0
        assert aggregates["max"] == 5.0
        assert aggregates["p(95)"] == pytest.approx(4.8)

    @pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf, "abc", None, True])
    def test_bad_samples_rejected(self, bad) -> None:
        dist = Distribution("rtt")
        dist.observe(1.0)
        assert dist.observe(bad) is False
        assert dist.rejected == 1
        assert dist.count == 1
        assert dist.max == 1.0

    def test_reservoir_keeps_exact_extremes(self) -> None:
        dist = Distribution("rtt", max_samples=100)
        for value in range(10000):
            dist.observe(value)
        assert dist.count == 10000
        assert dist.min == 0.0
        assert dist.max == 9999.0
        assert len(dist._samples) == 100
        assert dist.percentile(0) == 0.0
        assert dist.percentile(100) == 9999.0
        assert 0.0 <= dist.percentile(50) <= 9999.0

    def test_empty_distribution(self) -> None:
        dist = Distribution("rtt")
        assert dist.percentile(95) == 0.0
        assert dist.mean == 0.0


class TestRegistry:
    def test_get_or_create(self) -> None:
        registry = MetricsRegistry()
        assert registry.counter("a") is registry.counter("a")
        registry.rate("b").add(True)
        registry.distribution("c").observe(3)
        assert registry.names() == ["a", "b", "c"]

    def test_kind_clash(self) -> None:
        registry = MetricsRegistry()
        registry.counter("a")
        with pytest.raises(TypeError):
            registry.rate("a")

    def test_snapshot(self) -> None:
        registry = MetricsRegistry()
        registry.counter("sent").add(2)
        registry.distribution("rtt").observe(5)
        snap = registry.snapshot()
        assert snap["sent"] == {"type": "counter", "values": {"count": 2}}
        assert snap["rtt"]["type"] == "trend"
        assert snap["rtt"]["values"]["p(95)"] == 5.0

    def test_registry_reservoir_size(self) -> None:
        registry = MetricsRegistry(max_samples=10)
        assert registry.distribution("rtt").max_samples == 10


class TestThresholds:
    def test_parse(self) -> None:
        threshold = Threshold.parse("websocket_rtt", "p(95) < 1000")
        assert threshold.aggregate == "p(95)"
        assert threshold.op == "<"
        assert threshold.bound == 1000.0

    def test_parse_mapping(self) -> None:
        thresholds = parse_thresholds({"a": "rate>0.9", "b": ["avg<5", "max<=10"]})
        assert [t.metric for t in thresholds] == ["a", "b", "b"]

    @pytest.mark.parametrize("expr", ["", "p95<1", "rate ~ 1", "avg<"])
    def test_invalid(self, expr: str) -> None:
        with pytest.raises(ConfigError):
            Threshold.parse("x", expr)

    def test_evaluate(self) -> None:
        registry = MetricsRegistry()
        rate = registry.rate("connection_success")
        rate.add(True)
        rate.add(False)
        for value in (10, 20, 30):
            registry.distribution("websocket_rtt").observe(value)
        registry.counter("protocol_errors").add(0)
        thresholds = parse_thresholds({
            "connection_success": ["rate>0.95"],
            "websocket_rtt": ["p(95)<1000", "max<=30"],
            "protocol_errors": ["count==0"],
        })
        results = evaluate_thresholds(registry, thresholds)
        assert [r.passed for r in results] == [False, True, True, True]
        assert results[0].observed == pytest.approx(0.5)

    def test_missing_metric_fails(self) -> None:
        results = evaluate_thresholds(MetricsRegistry(), parse_thresholds({"nope": "count<1"}))
        assert results[0].passed is False
        assert results[0].reason == "metric not recorded"

    def test_wrong_aggregate_fails(self) -> None:
        registry = MetricsRegistry()
        registry.counter("sent").add(1)
        results = evaluate_thresholds(registry, parse_thresholds({"sent": "p(95)<1"}))
        assert results[0].passed is False
        assert "not available" in results[0].reason
