"""
Monitoring - Metrics and health checks for the suggestion pipeline

Metric emission is fire-and-forget: a failing collector never affects a
suggestion request.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import logging
import statistics
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheck:
    """Result of a health check."""
    name: str
    status: HealthStatus
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "duration_ms": round(self.duration_ms, 2),
        }


class MetricsCollector:
    """
    Collects and aggregates metrics.

    Thread-safe counters and histograms keyed by name and labels.
    """

    def __init__(self, histogram_size: int = 1000):
        self._counters: Dict[str, float] = defaultdict(float)
        self._histograms: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=histogram_size))
        self._lock = threading.RLock()

    def _make_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        """Create a unique key from name and labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._make_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get histogram statistics."""
        key = self._make_key(name, labels)
        with self._lock:
            values = list(self._histograms.get(key, []))

        if not values:
            return {}

        ordered = sorted(values)
        return {
            "count": len(values),
            "min": ordered[0],
            "max": ordered[-1],
            "mean": statistics.mean(values),
            "median": statistics.median(values),
            "p95": ordered[int(len(values) * 0.95)] if len(values) >= 20 else ordered[-1],
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            histogram_keys = list(self._histograms.keys())
            data = {
                "counters": dict(self._counters),
            }
        data["histograms"] = {k: self.get_histogram_stats(k) for k in histogram_keys}
        return data


class SuggestionMonitor:
    """
    Records suggestion pipeline metrics.

    Counters:
        suggestion_cache_total{result,tier}
        suggestion_source_total{source}
        generation_fallback_total{kind}
        suggestion_errors_total{reason}
    Histograms:
        suggestion_retrieval_latency_ms{source}
        generation_latency_ms{strategy}
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics or MetricsCollector()

    def _safe(self, fn: Callable[[], None]):
        try:
            fn()
        except Exception as e:
            logger.debug(f"Metric emission failed: {e}")

    def record_cache_hit(self, tier: str):
        self._safe(lambda: self.metrics.increment(
            "suggestion_cache_total", labels={"result": "hit", "tier": tier}))

    def record_cache_miss(self):
        self._safe(lambda: self.metrics.increment(
            "suggestion_cache_total", labels={"result": "miss", "tier": "none"}))

    def record_result(self, source: str, latency_ms: float):
        def emit():
            self.metrics.increment("suggestion_source_total", labels={"source": source})
            self.metrics.observe("suggestion_retrieval_latency_ms", latency_ms, labels={"source": source})
        self._safe(emit)

    def record_generation(self, strategy: str, latency_ms: float, candidates: int):
        def emit():
            self.metrics.observe("generation_latency_ms", latency_ms, labels={"strategy": strategy})
            self.metrics.increment("generation_candidates_total", candidates, labels={"strategy": strategy})
        self._safe(emit)

    def record_fallback(self, kind: str):
        """kind: standard (contrastive failed), retry (relaxed regeneration) or canned."""
        self._safe(lambda: self.metrics.increment("generation_fallback_total", labels={"kind": kind}))

    def record_error(self, reason: str):
        self._safe(lambda: self.metrics.increment("suggestion_errors_total", labels={"reason": reason}))

    def get_stats(self) -> Dict[str, Any]:
        return self.metrics.get_all_metrics()


class HealthChecker:
    """
    Runs registered health checks and aggregates results.
    """

    def __init__(self):
        self._checks: Dict[str, Callable[[], HealthCheck]] = {}
        self._lock = threading.RLock()

    def register(self, name: str, check_fn: Callable[[], HealthCheck]):
        with self._lock:
            self._checks[name] = check_fn

    def run_check(self, name: str) -> HealthCheck:
        """Run a specific health check."""
        with self._lock:
            check_fn = self._checks.get(name)

        if not check_fn:
            return HealthCheck(name=name, status=HealthStatus.UNKNOWN, message="Check not found")

        start = time.perf_counter()
        try:
            result = check_fn()
        except Exception as e:
            result = HealthCheck(name=name, status=HealthStatus.UNHEALTHY, message=f"Check failed: {e}")
        result.duration_ms = (time.perf_counter() - start) * 1000
        return result

    def get_status_report(self) -> Dict[str, Any]:
        """Run every check and report the worst status."""
        with self._lock:
            names = list(self._checks.keys())
        results = {name: self.run_check(name) for name in names}

        statuses = [r.status for r in results.values()]
        if not statuses:
            overall = HealthStatus.UNKNOWN
        elif all(s == HealthStatus.HEALTHY for s in statuses):
            overall = HealthStatus.HEALTHY
        elif any(s == HealthStatus.UNHEALTHY for s in statuses):
            overall = HealthStatus.UNHEALTHY
        else:
            overall = HealthStatus.DEGRADED

        return {
            "status": overall.value,
            "checks": {name: r.to_dict() for name, r in results.items()},
            "timestamp": time.time(),
        }
