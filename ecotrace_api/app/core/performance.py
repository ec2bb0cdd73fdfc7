"""
Request performance monitor.

HTTP middleware in ``main.py`` reports every request here.  Durations
are kept in a bounded window per route so that percentiles reflect
recent traffic.
"""

import math
import threading
import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict

from .cache import cache
from .config import settings

WINDOW_SIZE = 1000


def percentile(values, pct: float) -> float:
    """Nearest-rank percentile (index ``ceil(pct/100 * n) - 1``)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(0, math.ceil(pct / 100 * len(ordered)) - 1)
    return ordered[index]


class PerformanceMonitor:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._started = time.time()
            self._durations: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=WINDOW_SIZE))
            self._counts: Dict[str, int] = defaultdict(int)
            self._errors: Dict[str, int] = defaultdict(int)
            self._slow = 0

    def record(self, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        with self._lock:
            self._durations[key].append(duration_ms)
            self._counts[key] += 1
            if status_code >= 500:
                self._errors[key] += 1
            if duration_ms > settings.performance_target_ms:
                self._slow += 1

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            endpoints = {}
            all_durations = []
            for key, durations in self._durations.items():
                values = list(durations)
                all_durations.extend(values)
                endpoints[key] = {
                    "count": self._counts[key],
                    "avg_ms": round(sum(values) / len(values), 2) if values else 0.0,
                    "min_ms": round(min(values), 2) if values else 0.0,
                    "max_ms": round(max(values), 2) if values else 0.0,
                    "p95_ms": round(percentile(values, 95), 2),
                    "errors": self._errors[key],
                }
            total = sum(self._counts.values())
            errors = sum(self._errors.values())
            return {
                "total_requests": total,
                "error_count": errors,
                "error_rate": round(errors / total, 4) if total else 0.0,
                "avg_response_time_ms": round(sum(all_durations) / len(all_durations), 2)
                if all_durations
                else 0.0,
                "p95_response_time_ms": round(percentile(all_durations, 95), 2),
                "slow_requests": self._slow,
                "target_ms": settings.performance_target_ms,
                "endpoints": endpoints,
                "uptime_seconds": round(time.time() - self._started, 1),
                "cache": cache.stats(),
            }


performance_monitor = PerformanceMonitor()
