"""Prometheus metrics for node pools.

Every recorder is fire-and-forget: a metrics failure is logged and never
reaches the reconcile pass.
"""

from __future__ import annotations

from loguru import logger
from prometheus_client import CollectorRegistry, Counter, Gauge

from nodeward.api import NodePoolKey

log = logger.bind(component="metrics")


class MetricsCollector:
    """Pool size and scaling counters on an instance-owned registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.pool_size = Gauge(
            "nodeward_nodepool_size",
            "Current size of the node pool",
            ["nodepool", "namespace", "status"],
            registry=self.registry,
        )
        self.scale_ups = Counter(
            "nodeward_nodepool_scale_ups_total",
            "Total number of nodes added by scale up",
            ["nodepool", "namespace"],
            registry=self.registry,
        )
        self.scale_downs = Counter(
            "nodeward_nodepool_scale_downs_total",
            "Total number of nodes removed by scale down",
            ["nodepool", "namespace"],
            registry=self.registry,
        )
        self.reconcile_errors = Counter(
            "nodeward_reconcile_errors_total",
            "Total number of failed reconcile passes",
            ["nodepool", "namespace"],
            registry=self.registry,
        )
        self.dead_letters = Counter(
            "nodeward_dead_letters_total",
            "Total number of operations recorded in the dead letter store",
            ["operation"],
            registry=self.registry,
        )

    def record_pool_size(self, key: NodePoolKey, current: int, ready: int) -> None:
        try:
            self.pool_size.labels(key.name, key.namespace, "current").set(current)
            self.pool_size.labels(key.name, key.namespace, "ready").set(ready)
        except Exception:
            log.exception("Failed to record pool size for {pool}", pool=str(key))

    def record_scale_up(self, key: NodePoolKey, count: int) -> None:
        try:
            self.scale_ups.labels(key.name, key.namespace).inc(count)
        except Exception:
            log.exception("Failed to record scale up for {pool}", pool=str(key))

    def record_scale_down(self, key: NodePoolKey, count: int) -> None:
        try:
            self.scale_downs.labels(key.name, key.namespace).inc(count)
        except Exception:
            log.exception("Failed to record scale down for {pool}", pool=str(key))

    def record_reconcile_error(self, key: NodePoolKey) -> None:
        try:
            self.reconcile_errors.labels(key.name, key.namespace).inc()
        except Exception:
            log.exception("Failed to record reconcile error for {pool}", pool=str(key))

    def record_dead_letter(self, operation: str) -> None:
        try:
            self.dead_letters.labels(operation).inc()
        except Exception:
            log.exception("Failed to record dead letter for {op}", op=operation)
