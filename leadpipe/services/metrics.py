from __future__ import annotations

from collections import deque
from typing import Any

MetricKey = tuple[str, tuple[tuple[str, str], ...]]


def _key(name: str, labels: dict[str, Any]) -> MetricKey:
    return name, tuple(sorted((label, str(value)) for label, value in labels.items()))


def percentile(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = int((p / 100.0) * (len(ordered) - 1))
    return ordered[index]


class MetricsCollector:
    """Counters and duration samples owned by one pipeline instance.

    Each worker receives the collector at construction time. Durations keep the
    most recent ``max_samples`` observations per series, which bounds memory
    for long-running processes while keeping p50/p95 meaningful.
    """

    def __init__(self, *, max_samples: int = 1000) -> None:
        self.max_samples = max(1, max_samples)
        self._counters: dict[MetricKey, int] = {}
        self._samples: dict[MetricKey, deque[float]] = {}
        self._observations: dict[MetricKey, int] = {}

    def increment(self, name: str, amount: int = 1, **labels: Any) -> None:
        key = _key(name, labels)
        self._counters[key] = self._counters.get(key, 0) + amount

    def observe(self, name: str, value: float, **labels: Any) -> None:
        key = _key(name, labels)
        samples = self._samples.get(key)
        if samples is None:
            samples = deque(maxlen=self.max_samples)
            self._samples[key] = samples
        samples.append(float(value))
        self._observations[key] = self._observations.get(key, 0) + 1

    def counter(self, name: str, **labels: Any) -> int:
        return self._counters.get(_key(name, labels), 0)

    def counter_total(self, name: str) -> int:
        return sum(value for (metric, _), value in self._counters.items() if metric == name)

    def samples(self, name: str, **labels: Any) -> list[float]:
        return list(self._samples.get(_key(name, labels), ()))

    def snapshot(self) -> dict[str, Any]:
        counters = [
            {"name": name, "labels": dict(labels), "value": value}
            for (name, labels), value in sorted(self._counters.items())
        ]
        histograms = []
        for (name, labels), samples in sorted(self._samples.items()):
            values = list(samples)
            histograms.append(
                {
                    "name": name,
                    "labels": dict(labels),
                    "count": self._observations.get((name, labels), len(values)),
                    "p50": round(percentile(values, 50), 3),
                    "p95": round(percentile(values, 95), 3),
                    "max": round(max(values), 3) if values else 0.0,
                }
            )
        return {"counters": counters, "histograms": histograms}
