"""
Metrics collection for LunarScry.

Thread-safe counters, gauges and latency histograms with optional labels,
exported as a JSON snapshot or in Prometheus text format.

Moderation counters recorded by the orchestrator:
- content_submitted_total{category}
- content_flagged_total
- votes_cast_total{direction}
- votes_withdrawn_total
- content_finalized_total{outcome}
- settlements_total{won}
- rewards_paid_total
- stake_operations_total{kind}
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

METRIC_PREFIX = "lunarscry"

# Request latency buckets in milliseconds
DEFAULT_BUCKETS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000)


@dataclass
class Histogram:
    """Cumulative bucketed distribution of observations."""

    bounds: tuple[float, ...] = DEFAULT_BUCKETS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.counts:
            self.counts = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
        self.counts[-1] += 1

    def buckets(self) -> list[tuple[str, int]]:
        labels = [str(b) for b in self.bounds] + ["+Inf"]
        return list(zip(labels, self.counts))


def _labels_key(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


def _flatten(values: dict[str, Any]) -> Any:
    if len(values) == 1 and "" in values:
        return values[""]
    return dict(values)


class MetricsCollector:
    """Thread-safe metrics collector."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(dict)
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][_labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(_labels_key(labels), 0)

    def get_counter_total(self, name: str) -> int:
        """Sum of a counter across all label sets."""
        with self._lock:
            return sum(self._counters[name].values())

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] = value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(_labels_key(labels), 0.0)

    def record_protocol_status(self, status: dict[str, Any]) -> None:
        """Refresh gauges from ModerationOrchestrator.get_protocol_status()."""
        with self._lock:
            self.set_gauge("protocol_paused", 1.0 if status.get("paused") else 0.0)
            for state, count in status.get("content_by_state", {}).items():
                self.set_gauge("content_records", count, {"state": state})
            stake = status.get("stake", {})
            self.set_gauge("stake_total", stake.get("total_staked", 0))
            self.set_gauge("stake_locked", stake.get("total_locked", 0))
            self.set_gauge("reward_pool_balance", status.get("reward_pool", {}).get("balance", 0))

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            key = _labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram()
            self._histograms[name][key].observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Time a block in milliseconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            histograms = {}
            for name, series in self._histograms.items():
                histograms[name] = {
                    key or "_total": {
                        "count": hist.count,
                        "sum": hist.sum,
                        "avg": hist.sum / hist.count if hist.count else 0,
                        "buckets": dict(hist.buckets()),
                    }
                    for key, hist in series.items()
                }
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {name: _flatten(values) for name, values in self._counters.items()},
                "gauges": {name: _flatten(values) for name, values in self._gauges.items()},
                "histograms": histograms,
            }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = [
            f"# HELP {METRIC_PREFIX}_uptime_seconds Time since application start",
            f"# TYPE {METRIC_PREFIX}_uptime_seconds gauge",
        ]
        with self._lock:
            lines.append(f"{METRIC_PREFIX}_uptime_seconds {time.time() - self._start_time:.2f}")

            for kind, store in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in store.items():
                    metric = f"{METRIC_PREFIX}_{name}"
                    lines.append(f"# TYPE {metric} {kind}")
                    for key, value in values.items():
                        lines.append(f"{metric}{{{key}}} {value}" if key else f"{metric} {value}")

            for name, series in self._histograms.items():
                metric = f"{METRIC_PREFIX}_{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    prefix = f"{key}," if key else ""
                    for le, count in hist.buckets():
                        lines.append(f'{metric}_bucket{{{prefix}le="{le}"}} {count}')
                    suffix = f"{{{key}}}" if key else ""
                    lines.append(f"{metric}_sum{suffix} {hist.sum:.2f}")
                    lines.append(f"{metric}_count{suffix} {hist.count}")

        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Reset all metrics (tests)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
