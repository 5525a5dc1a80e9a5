"""
Metrics Collector - Сбор метрик
===============================

[METRICS] Типы метрик:
- Counter: монотонно возрастающий (parts received, dispatches)
- Gauge: текущее значение (open gather buckets)
- Histogram: распределение (time from first part to dispatch)

[EXPORT] Prometheus text format и JSON.

[THREADS] Все метрики защищены threading.Lock: gather вызывается из
нескольких потоков транспорта одновременно.
"""

import time
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class MetricValue:
    """Значение метрики."""
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class _LabeledMetric:
    """Общая часть метрик с labels."""

    kind = "untyped"

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []

        self._values: Dict[Tuple, float] = defaultdict(float)
        self._lock = threading.Lock()

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._make_label_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def get_all(self) -> List[MetricValue]:
        result = []
        with self._lock:
            for label_key, value in self._values.items():
                labels = dict(zip(self.label_names, label_key)) if self.label_names else {}
                result.append(MetricValue(value=value, labels=labels))
        return result

    def _add(self, amount: float, labels: Optional[Dict[str, str]]) -> None:
        key = self._make_label_key(labels)
        with self._lock:
            self._values[key] += amount

    def _make_label_key(self, labels: Optional[Dict[str, str]]) -> Tuple:
        if not labels:
            return ()
        return tuple(labels.get(name, "") for name in self.label_names)


class Counter(_LabeledMetric):
    """
    Counter метрика - монотонно возрастающая.

    [USAGE]
    ```python
    parts = Counter("gather_parts_total", "Parts received")
    parts.inc()
    parts.inc(labels={"outcome": "complete"})
    ```
    """

    kind = "counter"

    def inc(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        if amount < 0:
            raise ValueError("Counter can only increase")
        self._add(amount, labels)


class Gauge(_LabeledMetric):
    """Gauge метрика - текущее значение."""

    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._make_label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._add(amount, labels)

    def dec(self, amount: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self._add(-amount, labels)


class Histogram:
    """
    Histogram метрика - распределение значений (без labels).

    Bucket counts are cumulative, as in the Prometheus exposition format.
    """

    kind = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0)

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        self.name = name
        self.description = description
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))

        self._bucket_counts: Dict[float, int] = {b: 0 for b in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "count": self._count,
                "sum": self._sum,
                "avg": self._sum / self._count if self._count else 0.0,
                "buckets": dict(self._bucket_counts),
            }


class MetricsCollector:
    """
    Реестр метрик с экспортом.

    [USAGE]
    ```python
    collector = MetricsCollector(prefix="jina")
    collector.counter("gather_parts_total", "Parts received").inc()
    print(collector.export_prometheus())
    ```
    """

    def __init__(self, prefix: str = "jina"):
        self.prefix = prefix

        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def _full_name(self, name: str) -> str:
        return f"{self.prefix}_{name}" if self.prefix else name

    def counter(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Counter:
        full_name = self._full_name(name)
        with self._lock:
            if full_name not in self._counters:
                self._counters[full_name] = Counter(full_name, description, labels)
            return self._counters[full_name]

    def gauge(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Gauge:
        full_name = self._full_name(name)
        with self._lock:
            if full_name not in self._gauges:
                self._gauges[full_name] = Gauge(full_name, description, labels)
            return self._gauges[full_name]

    def histogram(
        self,
        name: str,
        description: str = "",
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        full_name = self._full_name(name)
        with self._lock:
            if full_name not in self._histograms:
                self._histograms[full_name] = Histogram(full_name, description, buckets)
            return self._histograms[full_name]

    def export_prometheus(self) -> str:
        """Экспорт в Prometheus text format."""
        lines = []

        for metric in list(self._counters.values()) + list(self._gauges.values()):
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for mv in metric.get_all():
                lines.append(f"{metric.name}{self._format_labels(mv.labels)} {mv.value}")

        for histogram in self._histograms.values():
            if histogram.description:
                lines.append(f"# HELP {histogram.name} {histogram.description}")
            lines.append(f"# TYPE {histogram.name} histogram")
            stats = histogram.get_stats()
            for bucket, count in stats["buckets"].items():
                lines.append(f'{histogram.name}_bucket{{le="{bucket}"}} {count}')
            lines.append(f'{histogram.name}_bucket{{le="+Inf"}} {stats["count"]}')
            lines.append(f"{histogram.name}_sum {stats['sum']}")
            lines.append(f"{histogram.name}_count {stats['count']}")

        return "\n".join(lines)

    def export_json(self) -> Dict[str, Any]:
        """Экспорт в JSON."""
        result: Dict[str, Any] = {
            "timestamp": time.time(),
            "counters": {},
            "gauges": {},
            "histograms": {},
        }

        for section, metrics in (("counters", self._counters), ("gauges", self._gauges)):
            for name, metric in metrics.items():
                values = metric.get_all()
                if len(values) == 1 and not values[0].labels:
                    result[section][name] = values[0].value
                else:
                    result[section][name] = [
                        {"value": v.value, "labels": v.labels} for v in values
                    ]

        for name, histogram in self._histograms.items():
            result["histograms"][name] = histogram.get_stats()

        return result

    def _format_labels(self, labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = [f'{k}="{v}"' for k, v in labels.items()]
        return "{" + ",".join(parts) + "}"


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Получить глобальный MetricsCollector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
