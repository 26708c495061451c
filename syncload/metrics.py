"""Streaming metric primitives shared by every session of a run.

Each primitive guards its state with its own lock, so sessions running on
the event loop and helper threads can submit samples concurrently.
"""

from __future__ import annotations

import logging
import math
import operator
import random
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import AggregationError, ConfigError


class Counter:
    kind = "counter"

    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0
        self._lock = threading.Lock()

    def add(self, delta: int = 1) -> None:
        with self._lock:
            self._value += int(delta)

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def aggregates(self) -> Dict[str, float]:
        return {"count": self.value}


class Rate:
    kind = "rate"

    def __init__(self, name: str) -> None:
        self.name = name
        self._successes = 0
        self._total = 0
        self._lock = threading.Lock()

    def add(self, success: bool | int) -> None:
        with self._lock:
            self._total += 1
            if success:
                self._successes += 1

    @property
    def successes(self) -> int:
        with self._lock:
            return self._successes

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    @property
    def value(self) -> float:
        with self._lock:
            if self._total == 0:
                return 0.0
            return self._successes / self._total

    def aggregates(self) -> Dict[str, float]:
        with self._lock:
            rate = self._successes / self._total if self._total else 0.0
            return {"rate": rate, "passes": self._successes, "fails": self._total - self._successes}


def interpolate(sorted_values: List[float], p: float) -> float:
    """Linear interpolation at rank ``p/100 * (n-1)``."""
    if not sorted_values:
        return 0.0
    p = min(100.0, max(0.0, float(p)))
    rank = p / 100.0 * (len(sorted_values) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return sorted_values[lower]
    weight = rank - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


class Distribution:
    """Min/max/mean/percentile over observed samples.

    With ``max_samples`` set, percentiles come from a uniform reservoir of at
    most that many samples while count, sum, min and max stay exact.
    """

    kind = "trend"

    def __init__(self, name: str, max_samples: Optional[int] = None, seed: int = 0) -> None:
        self.name = name
        self.max_samples = max_samples
        self._samples: List[float] = []
        self._sorted = True
        self._count = 0
        self._sum = 0.0
        self._min = math.inf
        self._max = -math.inf
        self._rejected = 0
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def observe(self, value: Any) -> bool:
        try:
            sample = self._validate(value)
        except AggregationError as exc:
            with self._lock:
                self._rejected += 1
            logging.warning("metric %s discarded sample: %s", self.name, exc)
            return False
        with self._lock:
            self._count += 1
            self._sum += sample
            if sample < self._min:
                self._min = sample
            if sample > self._max:
                self._max = sample
            if self.max_samples is None or len(self._samples) < self.max_samples:
                self._samples.append(sample)
                self._sorted = False
            else:
                slot = self._rng.randrange(self._count)
                if slot < self.max_samples:
                    self._samples[slot] = sample
                    self._sorted = False
        return True

    @staticmethod
    def _validate(value: Any) -> float:
        if isinstance(value, bool):
            raise AggregationError(f"boolean sample {value!r}")
        try:
            sample = float(value)
        except (TypeError, ValueError) as exc:
            raise AggregationError(f"non-numeric sample {value!r}") from exc
        if not math.isfinite(sample):
            raise AggregationError(f"non-finite sample {value!r}")
        return sample

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def rejected(self) -> int:
        with self._lock:
            return self._rejected

    @property
    def min(self) -> float:
        with self._lock:
            return self._min if self._count else 0.0

    @property
    def max(self) -> float:
        with self._lock:
            return self._max if self._count else 0.0

    @property
    def mean(self) -> float:
        with self._lock:
            return self._sum / self._count if self._count else 0.0

    @property
    def median(self) -> float:
        return self.percentile(50)

    def percentile(self, p: float) -> float:
        with self._lock:
            if not self._count:
                return 0.0
            if p <= 0:
                return self._min
            if p >= 100:
                return self._max
            if not self._sorted:
                self._samples.sort()
                self._sorted = True
            value = interpolate(self._samples, p)
            return min(self._max, max(self._min, value))

    def aggregates(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": self.mean,
            "min": self.min,
            "max": self.max,
            "med": self.median,
            "p(90)": self.percentile(90),
            "p(95)": self.percentile(95),
        }


class MetricsRegistry:
    def __init__(self, max_samples: Optional[int] = None) -> None:
        self.max_samples = max_samples
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _get(self, name: str, factory: Callable[[], Any], kind: str) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = factory()
                self._metrics[name] = metric
            elif metric.kind != kind:
                raise TypeError(f"metric {name} already registered as {metric.kind}")
            return metric

    def counter(self, name: str) -> Counter:
        return self._get(name, lambda: Counter(name), Counter.kind)

    def rate(self, name: str) -> Rate:
        return self._get(name, lambda: Rate(name), Rate.kind)

    def distribution(self, name: str) -> Distribution:
        return self._get(name, lambda: Distribution(name, self.max_samples), Distribution.kind)

    def get(self, name: str) -> Optional[Any]:
        with self._lock:
            return self._metrics.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._metrics)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        return {m.name: {"type": m.kind, "values": m.aggregates()} for m in metrics}


OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

THRESHOLD_RE = re.compile(
    r"^\s*(?P<agg>[a-z]+(?:\(\s*\d+(?:\.\d+)?\s*\))?)\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregate: str
    op: str
    bound: float

    @classmethod
    def parse(cls, metric: str, expression: str) -> "Threshold":
        match = THRESHOLD_RE.match(expression)
        if not match:
            raise ConfigError(f"invalid threshold for {metric}: {expression!r}")
        aggregate = re.sub(r"\s+", "", match.group("agg"))
        pct = re.match(r"^p\((\d+(?:\.\d+)?)\)$", aggregate)
        if pct:
            aggregate = f"p({float(pct.group(1)):g})"
        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregate=aggregate,
            op=match.group("op"),
            bound=float(match.group("bound")),
        )

    def observed(self, metric: Any) -> Optional[float]:
        agg = self.aggregate
        if isinstance(metric, Counter):
            return float(metric.value) if agg in {"count", "value"} else None
        if isinstance(metric, Rate):
            return metric.value if agg in {"rate", "value"} else None
        if isinstance(metric, Distribution):
            if agg == "avg":
                return metric.mean
            if agg == "min":
                return metric.min
            if agg == "max":
                return metric.max
            if agg == "med":
                return metric.median
            if agg == "count":
                return float(metric.count)
            if agg.startswith("p("):
                return metric.percentile(float(agg[2:-1]))
        return None


@dataclass
class ThresholdResult:
    metric: str
    expression: str
    passed: bool
    observed: Optional[float] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "expression": self.expression,
            "passed": self.passed,
            "observed": self.observed,
            "reason": self.reason,
        }


def parse_thresholds(data: Optional[Dict[str, Any]]) -> List[Threshold]:
    thresholds: List[Threshold] = []
    for metric, expressions in (data or {}).items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, list):
            raise ConfigError(f"thresholds for {metric} must be a string or an array")
        for expr in expressions:
            thresholds.append(Threshold.parse(str(metric), str(expr)))
    return thresholds


def evaluate_thresholds(registry: MetricsRegistry,
                        thresholds: Iterable[Threshold]) -> List[ThresholdResult]:
    results: List[ThresholdResult] = []
    for threshold in thresholds:
        metric = registry.get(threshold.metric)
        if metric is None:
            results.append(ThresholdResult(threshold.metric, threshold.expression, False,
                                           reason="metric not recorded"))
            continue
        value = threshold.observed(metric)
        if value is None:
            results.append(ThresholdResult(threshold.metric, threshold.expression, False,
                                           reason=f"aggregate {threshold.aggregate} not available for {metric.kind}"))
            continue
        passed = OPERATORS[threshold.op](value, threshold.bound)
        results.append(ThresholdResult(threshold.metric, threshold.expression, passed, observed=value))
        if not passed:
            logging.warning("threshold failed: %s %s (observed %.3f)",
                            threshold.metric, threshold.expression, value)
    return results


@dataclass(frozen=True)
class MetricNames:
    """Metric names emitted by sessions; k6 naming where k6 has one."""

    connecting: str = "ws_connecting"
    sessions: str = "ws_sessions"
    connection_success: str = "connection_success"
    connection_failures: str = "connection_failures"
    active: str = "active_connections"
    messages_sent: str = "messages_sent"
    messages_received: str = "messages_received"
    bytes_sent: str = "bytes_sent"
    bytes_received: str = "bytes_received"
    rtt: str = "websocket_rtt"
    protocol_errors: str = "protocol_errors"
    transport_errors: str = "transport_errors"
    timeouts: str = "session_timeouts"
    iterations: str = "iterations"


METRIC_NAMES = MetricNames()
