"""
Query monitoring for the GN Registry

Every count, page and rollup query runs inside ``query_timer``. The timer
feeds three sinks:

- Prometheus histograms/counters labelled by operation name
- an in-process table of per-operation figures, reported by /health
- the ``registry.monitoring`` logger for slow queries

Operation names are ``<shape or table>.<step>``, e.g. ``families.count``,
``families.page``, ``stats.leaf``, ``audit_logs.purge``.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Optional, Dict, Any, List, Callable

from prometheus_client import Histogram, Counter

logger = logging.getLogger(__name__)


@dataclass
class MonitoringConfig:
    """Thresholds in milliseconds."""
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_query_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_prometheus: bool = True
) -> None:
    """Replace the thresholds; called once at startup from config.yaml."""
    global _config
    _config = MonitoringConfig(
        slow_query_threshold_ms=slow_query_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_prometheus=enable_prometheus
    )


# ============================================
# PROMETHEUS
# ============================================

QUERY_SECONDS = Histogram(
    'gn_registry_query_seconds',
    'Registry query duration in seconds',
    ['operation', 'outcome'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

SLOW_QUERIES = Counter(
    'gn_registry_slow_queries_total',
    'Registry queries slower than the slow-query threshold',
    ['operation']
)

AUDIT_WRITE_FAILURES = Counter(
    'gn_registry_audit_write_failures_total',
    'Audit records that could not be written',
    ['action_type']
)


# ============================================
# IN-PROCESS FIGURES
# ============================================

@dataclass
class OperationStats:
    """Running figures for one operation name."""
    operation: str
    count: int = 0
    errors: int = 0
    slow: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_run: Optional[datetime] = None

    def add(self, duration_ms: float, failed: bool, slow: bool) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)
        self.last_run = datetime.now()
        if failed:
            self.errors += 1
        if slow:
            self.slow += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'errors': self.errors,
            'slow_queries': self.slow,
            'avg_time_ms': round(self.total_ms / self.count, 2) if self.count else 0.0,
            'max_time_ms': round(self.max_ms, 2),
            'last_executed': self.last_run.isoformat() if self.last_run else None,
        }


class QueryStatsCollector:
    """Per-operation figures, safe to update from request threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ops: Dict[str, OperationStats] = {}
        self._since = datetime.now()

    def add(self, operation: str, duration_ms: float, failed: bool, slow: bool) -> None:
        with self._lock:
            stats = self._ops.setdefault(operation, OperationStats(operation))
            stats.add(duration_ms, failed, slow)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': (datetime.now() - self._since).total_seconds(),
                'operations': {name: s.to_dict() for name, s in self._ops.items()},
            }

    def slow_operations(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.to_dict() for s in self._ops.values() if s.slow]

    def reset(self) -> None:
        with self._lock:
            self._ops.clear()
            self._since = datetime.now()


_collector = QueryStatsCollector()


def get_db_metrics() -> Dict[str, Any]:
    return _collector.snapshot()


def get_slow_query_report() -> List[Dict[str, Any]]:
    """Operations that ran over the slow threshold at least once."""
    return _collector.slow_operations()


def reset_metrics() -> None:
    _collector.reset()


# ============================================
# TIMER
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Time the enclosed query. Exceptions are counted and re-raised.

    Usage:
        with query_timer("families.count"):
            total = session.execute(stmt).scalar()
    """
    started = time.perf_counter()
    failed = False
    try:
        yield
    except Exception:
        failed = True
        raise
    finally:
        seconds = time.perf_counter() - started
        elapsed_ms = seconds * 1000
        slow = elapsed_ms > _config.slow_query_threshold_ms

        _collector.add(operation, elapsed_ms, failed, slow)

        if _config.enable_prometheus:
            QUERY_SECONDS.labels(operation=operation, outcome="error" if failed else "ok").observe(seconds)
            if slow:
                SLOW_QUERIES.labels(operation=operation).inc()

        if slow:
            logger.warning(
                f"SLOW QUERY: {operation} took {elapsed_ms:.2f}ms "
                f"(threshold: {_config.slow_query_threshold_ms}ms)"
            )
        elif elapsed_ms > _config.warning_threshold_ms and not failed:
            logger.info(f"Query {operation} took {elapsed_ms:.2f}ms")


def timed_query(operation: str):
    """Decorator form of query_timer for repository methods."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator


def record_audit_failure(action_type: str) -> None:
    if _config.enable_prometheus:
        AUDIT_WRITE_FAILURES.labels(action_type=action_type).inc()
