"""Lightweight metrics registry for Prometheus compatible exports."""

from __future__ import annotations

import bisect
from threading import Lock
from typing import Sequence

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _format_value(value: float) -> str:
    """Format floating point values using Prometheus conventions."""

    if value == float("inf"):
        return "+Inf"
    return f"{value:.6f}".rstrip("0").rstrip(".") if not float(value).is_integer() else str(int(value))


def _escape(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def _format_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    pairs = [f'{name}="{_escape(value)}"' for name, value in zip(names, values, strict=True)]
    return "{" + ",".join(pairs) + "}"


class MetricsRegistry:
    """In-memory registry that collects metric samples."""

    def __init__(self) -> None:
        self._metrics: dict[str, _MetricBase] = {}
        self._lock = Lock()

    def register(self, metric: "_MetricBase") -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric

    def get(self, name: str) -> "_MetricBase | None":
        return self._metrics.get(name)

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "CounterMetric":
        metric = CounterMetric(name=name, description=description, label_names=label_names)
        self.register(metric)
        return metric

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "GaugeMetric":
        metric = GaugeMetric(name=name, description=description, label_names=label_names)
        self.register(metric)
        return metric

    def histogram(
        self,
        name: str,
        description: str,
        *,
        label_names: Sequence[str] = (),
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> "HistogramMetric":
        metric = HistogramMetric(name=name, description=description, label_names=label_names, buckets=buckets)
        self.register(metric)
        return metric

    def render(self) -> str:
        """Render all registered metrics using the Prometheus text format."""

        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


class _MetricBase:
    metric_type: str = "untyped"

    def __init__(self, *, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]

    def render(self) -> list[str]:
        lines = self._header()
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            # Prometheus expects at least one sample
            lines.append(f"{self.name} 0")
            return lines
        for labels, value in samples:
            lines.append(f"{self.name}{_format_labels(self.label_names, labels)} {_format_value(value)}")
        return lines

    def _label_values(self, values: Sequence[object]) -> tuple[str, ...]:
        if len(values) != len(self.label_names):
            expected = ", ".join(self.label_names) or "<none>"
            raise ValueError(
                f"Metric '{self.name}' expected {len(self.label_names)} label values [{expected}] "
                f"but received {len(values)}"
            )
        return tuple(str(value) for value in values)

    def labels(self, *values: object) -> "_BoundMetric":
        """Bind label values, Prometheus-client style: ``metric.labels("join").inc()``."""

        return _BoundMetric(self, self._label_values(values))

    def value(self, *label_values: object) -> float:
        with self._lock:
            return self._samples.get(self._label_values(label_values), 0.0)

    def _add(self, labels: tuple[str, ...], amount: float) -> None:
        with self._lock:
            self._samples[labels] = self._samples.get(labels, 0.0) + amount


class CounterMetric(_MetricBase):
    metric_type = "counter"

    def inc(self, *labels: object, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters cannot be incremented by negative values")
        self._add(self._label_values(labels), amount)


class GaugeMetric(_MetricBase):
    metric_type = "gauge"

    def set(self, value: float, *labels: object) -> None:
        key = self._label_values(labels)
        with self._lock:
            self._samples[key] = float(value)

    def inc(self, *labels: object, amount: float = 1.0) -> None:
        self._add(self._label_values(labels), amount)

    def dec(self, *labels: object, amount: float = 1.0) -> None:
        self._add(self._label_values(labels), -amount)


class HistogramMetric(_MetricBase):
    metric_type = "histogram"

    def __init__(
        self, *, name: str, description: str, label_names: Sequence[str], buckets: Sequence[float]
    ) -> None:
        super().__init__(name=name, description=description, label_names=label_names)
        self.buckets = tuple(sorted(buckets))
        self._counts: dict[tuple[str, ...], list[int]] = {}
        self._sums: dict[tuple[str, ...], float] = {}

    def observe(self, value: float, *labels: object) -> None:
        key = self._label_values(labels)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * (len(self.buckets) + 1))
            counts[bisect.bisect_left(self.buckets, value)] += 1
            self._sums[key] = self._sums.get(key, 0.0) + value

    def count(self, *label_values: object) -> int:
        with self._lock:
            return sum(self._counts.get(self._label_values(label_values), ()))

    def render(self) -> list[str]:
        lines = self._header()
        with self._lock:
            snapshot = sorted((key, list(counts), self._sums[key]) for key, counts in self._counts.items())
        names = self.label_names + ("le",)
        for key, counts, total in snapshot:
            cumulative = 0
            for bound, count in zip(self.buckets + (float("inf"),), counts, strict=True):
                cumulative += count
                labels = _format_labels(names, key + (_format_value(bound),))
                lines.append(f"{self.name}_bucket{labels} {cumulative}")
            plain = _format_labels(self.label_names, key)
            lines.append(f"{self.name}_sum{plain} {_format_value(total)}")
            lines.append(f"{self.name}_count{plain} {cumulative}")
        return lines


class _BoundMetric:
    """A metric with its label values fixed."""

    def __init__(self, metric: _MetricBase, label_values: tuple[str, ...]) -> None:
        self._metric = metric
        self._label_values = label_values

    def inc(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, (CounterMetric, GaugeMetric)):
            raise AttributeError(f"{self._metric.metric_type} metrics do not support inc()")
        self._metric.inc(*self._label_values, amount=amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support dec()")
        self._metric.dec(*self._label_values, amount=amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support set()")
        self._metric.set(value, *self._label_values)

    def observe(self, value: float) -> None:
        if not isinstance(self._metric, HistogramMetric):
            raise AttributeError("Only histograms support observe()")
        self._metric.observe(value, *self._label_values)


# Shared registry instance used across the backend.
registry = MetricsRegistry()
