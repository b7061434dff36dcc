"""
In-process timing of crop operations.

Keeps a bounded history of recent operations plus running per-operation
counters, and reports them as plain dicts for the API.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from statistics import median
from typing import Any, Deque, Dict, List, Optional
import threading

from domain.models import utcnow

DEFAULT_MAX_HISTORY = 1000


@dataclass(frozen=True)
class OperationMetric:
    operation: str
    duration: timedelta
    success: bool
    timestamp: datetime
    fallback: bool = False
    from_cache: bool = False
    error: Optional[str] = None


@dataclass
class _OperationTotals:
    count: int = 0
    failures: int = 0
    fallbacks: int = 0
    cache_hits: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    last_updated: Optional[datetime] = None

    def add(self, metric: OperationMetric, duration_ms: float) -> None:
        self.count += 1
        self.failures += 0 if metric.success else 1
        self.fallbacks += 1 if metric.fallback else 0
        self.cache_hits += 1 if metric.from_cache else 0
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = duration_ms if self.max_ms is None else max(self.max_ms, duration_ms)
        self.last_updated = metric.timestamp

    def to_dict(self) -> Dict[str, Any]:
        successes = self.count - self.failures
        return {
            "total_count": self.count,
            "success_count": successes,
            "failure_count": self.failures,
            "fallback_count": self.fallbacks,
            "cache_hit_count": self.cache_hits,
            "success_rate": successes / self.count if self.count else 0.0,
            "average_duration_ms": self.total_ms / self.count if self.count else 0.0,
            "min_duration_ms": self.min_ms,
            "max_duration_ms": self.max_ms,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


def _ms(duration: timedelta) -> float:
    return duration.total_seconds() * 1000


class PerformanceMonitor:
    """Thread-safe recorder for operation durations and outcomes."""

    def __init__(self, max_history: int = DEFAULT_MAX_HISTORY) -> None:
        self._history: Deque[OperationMetric] = deque(maxlen=max(1, max_history))
        self._totals: Dict[str, _OperationTotals] = {}
        self._lock = threading.Lock()

    def record(
        self,
        operation: str,
        duration: timedelta,
        success: bool = True,
        fallback: bool = False,
        from_cache: bool = False,
        error: Optional[str] = None,
    ) -> OperationMetric:
        metric = OperationMetric(
            operation=operation,
            duration=duration,
            success=success,
            timestamp=utcnow(),
            fallback=fallback,
            from_cache=from_cache,
            error=error,
        )
        with self._lock:
            self._history.append(metric)
            self._totals.setdefault(operation, _OperationTotals()).add(metric, _ms(duration))
        return metric

    def recent(self, operation: Optional[str] = None) -> List[OperationMetric]:
        with self._lock:
            history = list(self._history)
        if operation is None:
            return history
        return [m for m in history if m.operation == operation]

    def stats(self) -> Dict[str, Any]:
        """
        Overall figures over the retained history, plus lifetime per-operation
        counters (these survive history truncation).
        """
        with self._lock:
            history = list(self._history)
            operations = {name: totals.to_dict() for name, totals in self._totals.items()}

        durations = sorted(_ms(m.duration) for m in history)
        total = len(history)
        successes = sum(1 for m in history if m.success)
        return {
            "total_operations": total,
            "successful_operations": successes,
            "failed_operations": total - successes,
            "fallback_operations": sum(1 for m in history if m.fallback),
            "cache_hits": sum(1 for m in history if m.from_cache),
            "success_rate": successes / total if total else 0.0,
            "average_duration_ms": sum(durations) / total if total else 0.0,
            "median_duration_ms": median(durations) if durations else 0.0,
            "min_duration_ms": durations[0] if durations else 0.0,
            "max_duration_ms": durations[-1] if durations else 0.0,
            "operations": operations,
        }

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
            self._totals.clear()
