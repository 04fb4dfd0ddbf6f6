"""In-process metrics for the classification path.

Counters carry optional labels (tier, escalation reason, init outcome).
Histograms keep raw samples and answer nearest-rank percentiles; the
performance experiment reuses them for its latency percentiles.
``TaskClassificationService.get_stats`` reports ``metrics.snapshot()``.

Usage:
    from modelfinder.observability import metrics

    metrics.increment("classification_total", labels={"method": "keyword"})
    metrics.observe("classification_duration_seconds", 0.012)
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: Optional[dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


# =============================================================================
# Metric types
# =============================================================================

@dataclass
class Counter:
    """Monotonic count per label combination."""
    name: str
    help_text: str
    values: dict[LabelKey, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def increment(self, labels: Optional[dict[str, str]] = None, value: int = 1) -> None:
        key = _label_key(labels)
        with self._lock:
            self.values[key] = self.values.get(key, 0) + value

    def get(self, labels: Optional[dict[str, str]] = None) -> int:
        return self.values.get(_label_key(labels), 0)

    def total(self) -> int:
        with self._lock:
            return sum(self.values.values())

    def by_label(self, label: str) -> dict[str, int]:
        """Counts grouped by one label, e.g. ``by_label("method")``."""
        grouped: dict[str, int] = {}
        with self._lock:
            for key, count in self.values.items():
                value = dict(key).get(label)
                if value is not None:
                    grouped[value] = grouped.get(value, 0) + count
        return grouped

    def reset(self) -> None:
        with self._lock:
            self.values.clear()


@dataclass
class Histogram:
    """Raw latency samples."""
    name: str
    help_text: str
    values: list[float] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def observe(self, value: float) -> None:
        with self._lock:
            self.values.append(value)

    def percentile(self, q: float) -> float:
        """Nearest-rank percentile, ``q`` in [0, 1]. 0.0 when empty."""
        with self._lock:
            ordered = sorted(self.values)
        if not ordered:
            return 0.0
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]

    def summary(self) -> dict[str, float]:
        return {
            "count": len(self.values),
            "p50": self.percentile(0.50),
            "p95": self.percentile(0.95),
            "p99": self.percentile(0.99),
        }

    def reset(self) -> None:
        with self._lock:
            self.values.clear()


# =============================================================================
# Registry
# =============================================================================

DEFAULT_COUNTERS = {
    "classification_total": "Classifications served, by winning tier",
    "classification_fallback_total": "Escalations past the embedding tier, by reason",
    "embedding_init_total": "Embedding engine initializations, by outcome",
    "reference_append_total": "Reference examples appended after initialization",
}

DEFAULT_HISTOGRAMS = {
    "classification_duration_seconds": "End-to-end classification latency",
    "embedding_init_duration_seconds": "Model acquisition plus reference embedding time",
}


class MetricsRegistry:
    """Named counters and histograms. Unknown names are ignored."""

    def __init__(self):
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()
        for name, help_text in DEFAULT_COUNTERS.items():
            self.register_counter(name, help_text)
        for name, help_text in DEFAULT_HISTOGRAMS.items():
            self.register_histogram(name, help_text)

    def register_counter(self, name: str, help_text: str) -> Counter:
        with self._lock:
            return self._counters.setdefault(name, Counter(name=name, help_text=help_text))

    def register_histogram(self, name: str, help_text: str) -> Histogram:
        with self._lock:
            return self._histograms.setdefault(name, Histogram(name=name, help_text=help_text))

    def increment(self, name: str, labels: Optional[dict[str, str]] = None, value: int = 1) -> None:
        if name in self._counters:
            self._counters[name].increment(labels, value)

    def observe(self, name: str, value: float) -> None:
        if name in self._histograms:
            self._histograms[name].observe(value)

    def counter(self, name: str) -> Optional[Counter]:
        return self._counters.get(name)

    def snapshot(self) -> dict:
        """Counter totals plus histogram percentiles."""
        return {
            "counters": {name: c.total() for name, c in self._counters.items()},
            "fallback_reasons": self._counters["classification_fallback_total"].by_label("reason"),
            "latency_seconds": {
                name: h.summary() for name, h in self._histograms.items()
            },
        }

    def reset_all(self) -> None:
        """Clear every metric (tests reset between cases)."""
        for counter in self._counters.values():
            counter.reset()
        for histogram in self._histograms.values():
            histogram.reset()


# Global metrics instance
metrics = MetricsRegistry()
