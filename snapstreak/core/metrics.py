"""In-process engine metrics rendered in Prometheus text format."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def export(self) -> List[str]:
        lines = [f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for key, value in sorted(self._values.items()):
                if self.label_names:
                    rendered = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                    lines.append(f"{self.name}{{{rendered}}} {value}")
                else:
                    lines.append(f"{self.name} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        self._add(labels, amount)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names: Optional[Iterable[str]]):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, label_names)
                self._metrics[name] = metric
            return metric

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter, name, label_names)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge, name, label_names)

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self._metrics.values():
            metric.reset()


METRICS = MetricsRegistry()

cas_retries_total = METRICS.counter("snapstreak_cas_retries_total", ["record"])
cas_conflicts_total = METRICS.counter("snapstreak_cas_conflicts_total", ["record"])
pair_streak_transitions_total = METRICS.counter("snapstreak_pair_streak_transitions_total", ["transition"])
score_points_total = METRICS.counter("snapstreak_score_points_total", ["kind"])
sweep_habits_total = METRICS.counter("snapstreak_sweep_habits_total", ["sweep", "outcome"])

sweep_last_run_processed = METRICS.gauge("snapstreak_sweep_last_run_processed", ["sweep"])
