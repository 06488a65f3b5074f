"""
Runtime metrics.

Components receive a ``MetricsRecorder`` instead of touching module-level
counters, so tests can hand each component its own recorder.  The default
implementation keeps everything in process memory behind a lock; counters are
incremented from many concurrent requests.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Protocol


class MetricsRecorder(Protocol):
    def increment(self, name: str, value: int = 1) -> None: ...

    def observe(self, name: str, value: float) -> None: ...


@dataclass
class _Histogram:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    def summary(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": round(self.total / self.count, 3) if self.count else 0.0,
        }


class InMemoryMetrics:
    """Thread-safe counters and histogram summaries."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._histograms: dict[str, _Histogram] = {}

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms.setdefault(name, _Histogram()).add(value)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def histogram(self, name: str) -> dict[str, Any]:
        with self._lock:
            return self._histograms.get(name, _Histogram()).summary()

    def snapshot(self) -> dict[str, Any]:
        """Return counters, histogram summaries and cache hit rates."""
        with self._lock:
            counters = dict(self._counters)
            histograms = {k: h.summary() for k, h in self._histograms.items()}

        # e.g. llm_cache_hits + llm_cache_misses -> llm_cache_hit_rate
        prefixes = {
            name.rsplit("_", 1)[0]
            for name in counters
            if name.endswith("_cache_hits") or name.endswith("_cache_misses")
        }
        ratios: dict[str, float] = {}
        for prefix in sorted(prefixes):
            hits = counters.get(f"{prefix}_hits", 0)
            total = hits + counters.get(f"{prefix}_misses", 0)
            ratios[f"{prefix}_hit_rate"] = round(hits / total, 3) if total else 0.0
        return {"counters": counters, "histograms": histograms, "ratios": ratios}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()


# ── Module-level default ────────────────────────────────

_metrics = InMemoryMetrics()


def get_metrics() -> InMemoryMetrics:
    """Return the process-wide recorder used by the default wiring."""
    return _metrics
