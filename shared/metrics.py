"""
Shared metrics configuration for the identity cache layer.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager

class MetricsCollector:
    """Centralized metrics collector for the cache layer."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""
        kwargs = {"registry": self.registry} if self.registry is not None else {}

        self._metrics["service_info"] = Info(
            "identity_cache_service",
            "Identity cache service information",
            **kwargs
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["reads_total"] = Counter(
            "identity_cache_reads_total",
            "Total cache reads by outcome",
            ["result"],
            **kwargs
        )

        self._metrics["misses_resolved_total"] = Counter(
            "identity_cache_misses_resolved_total",
            "Total cache misses resolved from the record store",
            ["path"],
            **kwargs
        )

        self._metrics["invalidations_total"] = Counter(
            "identity_cache_invalidations_total",
            "Total keys expired on record mutation",
            ["index"],
            **kwargs
        )

        self._metrics["invalidation_errors_total"] = Counter(
            "identity_cache_invalidation_errors_total",
            "Total failed key expirations",
            ["index"],
            **kwargs
        )

        self._metrics["integrity_faults_total"] = Counter(
            "identity_cache_integrity_faults_total",
            "Total loaded records whose id did not match the requested id",
            ["operation"],
            **kwargs
        )

        self._metrics["bulk_load_size"] = Histogram(
            "identity_cache_bulk_load_size",
            "Number of ids sent to the record store per bulk load",
            buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000),
            **kwargs
        )

        self._metrics["operation_duration_seconds"] = Histogram(
            "identity_cache_operation_duration_seconds",
            "Query API operation duration in seconds",
            ["operation"],
            **kwargs
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_read(self, result: str):
        """Record a cache read outcome (hit, memoized_hit, miss)."""
        self._metrics["reads_total"].labels(result=result).inc()

    def record_miss_resolved(self, path: str, count: int = 1):
        """Record misses resolved from the record store."""
        self._metrics["misses_resolved_total"].labels(path=path).inc(count)

    def record_bulk_load(self, size: int):
        """Record the size of a bulk load."""
        self._metrics["bulk_load_size"].observe(size)

    def record_invalidation(self, index: str, failed: bool = False):
        """Record a key expiration attempt."""
        if failed:
            self._metrics["invalidation_errors_total"].labels(index=index).inc()
        else:
            self._metrics["invalidations_total"].labels(index=index).inc()

    def record_integrity_fault(self, operation: str):
        """Record an id mismatch between request and loaded record."""
        self._metrics["integrity_faults_total"].labels(operation=operation).inc()

    @contextmanager
    def time_operation(self, operation_name: str):
        """Context manager to time a query API operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            self._metrics["operation_duration_seconds"].labels(operation=operation_name).observe(duration)

_default_collector: Optional[MetricsCollector] = None
_collector_lock = threading.Lock()

def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    global _default_collector

    if registry is not None:
        return MetricsCollector(service_name, registry)

    # The default registry rejects duplicate metric names
    with _collector_lock:
        if _default_collector is None:
            _default_collector = MetricsCollector(service_name)
        return _default_collector
