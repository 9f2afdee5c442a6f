"""In-process metrics for rate limiting: counters, gauges and histograms with labels."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from zonelimit.durations import format_duration

_NAMESPACE = "caddy_rate_limit"

PROCESS_TIME_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0)


class _LabeledMetric:
    def __init__(self, name: str, help: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _key(self, labels: Tuple) -> Tuple[str, ...]:
        if len(labels) != len(self.label_names):
            raise ValueError(
                f"{self.name} expects {len(self.label_names)} label values, got {len(labels)}"
            )
        return tuple(str(label) for label in labels)


class LabeledCounter(_LabeledMetric):
    """A monotonically increasing count per set of label values."""

    def __init__(self, name: str, help: str, label_names: Sequence[str]) -> None:
        super().__init__(name, help, label_names)
        self._values: Dict[Tuple[str, ...], float] = {}

    def inc(self, *args: str) -> None:
        key = self._key(args)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + 1.0

    def value(self, *args: str) -> float:
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0.0)


class LabeledGauge(_LabeledMetric):
    """A value that can be set freely per set of label values."""

    def __init__(self, name: str, help: str, label_names: Sequence[str]) -> None:
        super().__init__(name, help, label_names)
        self._values: Dict[Tuple[str, ...], float] = {}

    def set(self, value: float, *args: str) -> None:
        key = self._key(args)
        with self._lock:
            self._values[key] = float(value)

    def value(self, *args: str) -> float:
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0.0)


@dataclass
class _HistogramSeries:
    count: int
    total: float
    buckets: list


class LabeledHistogram(_LabeledMetric):
    """Observations sorted into upper-bounded buckets per set of label values."""

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Sequence[str],
        buckets: Sequence[float] = PROCESS_TIME_BUCKETS,
    ) -> None:
        super().__init__(name, help, label_names)
        self.buckets = tuple(sorted(buckets))
        self._series: Dict[Tuple[str, ...], _HistogramSeries] = {}

    def observe(self, value: float, *args: str) -> None:
        key = self._key(args)
        with self._lock:
            series = self._series.setdefault(
                key, _HistogramSeries(0, 0.0, [0] * len(self.buckets))
            )
            series.count += 1
            series.total += value
            for position, bound in enumerate(self.buckets):
                if value <= bound:
                    series.buckets[position] += 1
                    break

    def count(self, *args: str) -> int:
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            return series.count if series else 0

    def sum(self, *args: str) -> float:
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            return series.total if series else 0.0

    def bucket_counts(self, *args: str) -> Dict[float, int]:
        """Cumulative counts keyed by upper bound, ending with ``math.inf``."""
        key = self._key(args)
        with self._lock:
            series = self._series.get(key)
            per_bucket = series.buckets if series else [0] * len(self.buckets)
            total = series.count if series else 0
        result: Dict[float, int] = {}
        running = 0
        for bound, hits in zip(self.buckets, per_bucket):
            running += hits
            result[bound] = running
        result[math.inf] = total
        return result


@dataclass
class RateLimitMetrics:
    """The full set of rate limit metrics."""

    declined_total: LabeledCounter
    requests_total: LabeledCounter
    process_time: LabeledHistogram
    keys_total: LabeledGauge
    config: LabeledCounter

    @classmethod
    def create(cls) -> "RateLimitMetrics":
        return cls(
            declined_total=LabeledCounter(
                f"{_NAMESPACE}_declined_requests_total",
                "Total number of requests for which rate limit was applied "
                "(Declined with HTTP 429 status code returned).",
                ("zone", "key"),
            ),
            requests_total=LabeledCounter(
                f"{_NAMESPACE}_requests_total",
                "Total number of requests that passed through Rate Limit module "
                "(both declined & processed).",
                ("zone", "key"),
            ),
            process_time=LabeledHistogram(
                f"{_NAMESPACE}_process_time_seconds",
                "A time taken to process rate limiting for each request.",
                ("zone", "key"),
                PROCESS_TIME_BUCKETS,
            ),
            keys_total=LabeledGauge(
                f"{_NAMESPACE}_keys_total",
                "Total number of keys that each RL zone contains. "
                "(This metric is collected in the background for each zone.)",
                ("zone",),
            ),
            config=LabeledCounter(
                f"{_NAMESPACE}_config",
                "Shows configuration of the rate limiter module. Reported only once "
                "on bootstrap as configuration is not dynamically configurable.",
                ("zone", "max_events", "window"),
            ),
        )


_global_metrics: Optional[RateLimitMetrics] = None
_global_lock = threading.Lock()


def register_metrics() -> RateLimitMetrics:
    """Create the global metrics once and return them."""
    global _global_metrics
    with _global_lock:
        if _global_metrics is None:
            _global_metrics = RateLimitMetrics.create()
        return _global_metrics


def reset_metrics() -> None:
    """Forget the global metrics; the next registration starts fresh."""
    global _global_metrics
    with _global_lock:
        _global_metrics = None


def get_metrics() -> Optional[RateLimitMetrics]:
    """Return the global metrics, or ``None`` if none are registered."""
    return _global_metrics


def _zone_flag(has_zone: bool) -> str:
    return "true" if has_zone else "false"


@dataclass
class MetricsCollector:
    """Records rate limit events into the global metrics when enabled."""

    enabled: bool = True

    def _target(self) -> Optional[RateLimitMetrics]:
        return get_metrics() if self.enabled else None

    def record_request(self, has_zone: bool) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.requests_total.inc(_zone_flag(has_zone), "")

    def record_request_per_key(self, zone: str, key: str) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.requests_total.inc(zone, "")
            metrics.requests_total.inc(zone, key)

    def record_declined_request(self, zone: str, key: str) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.declined_total.inc(zone, "")
            metrics.declined_total.inc(zone, key)

    def record_process_time(self, duration: float, has_zone: bool) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.process_time.observe(duration, _zone_flag(has_zone), "")

    def record_process_time_per_key(self, duration: float, zone: str, key: str) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.process_time.observe(duration, zone, "")
            metrics.process_time.observe(duration, zone, key)

    def update_keys_count(self, zone: str, count: int) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.keys_total.set(count, zone)

    def record_config(self, zone: str, max_events: int, window: float) -> None:
        metrics = self._target()
        if metrics is not None:
            metrics.config.inc(zone, str(max_events), format_duration(window))