from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Mapping


class MetricRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._observations: dict[str, list[float]] = defaultdict(lambda: [0, 0.0])
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        """Track count and sum for a duration-like value (exported as `_count` / `_sum`)."""
        key = self._format_key(name, labels)
        with self._lock:
            bucket = self._observations[key]
            bucket[0] += 1
            bucket[1] += float(value)

    def get(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        key = self._format_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, float | int]:
        with self._lock:
            merged: dict[str, float | int] = dict(self._counters)
            for key, (count, total) in self._observations.items():
                merged[f"{key}_count"] = int(count)
                merged[f"{key}_sum"] = round(total, 3)
            return merged

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._observations.clear()

    @staticmethod
    def _format_key(name: str, labels: Mapping[str, str] | None) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
